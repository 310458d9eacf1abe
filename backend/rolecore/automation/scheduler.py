"""
Role automation scheduler.

Runs the AutoAssignmentEvaluator sweep on a fixed interval:
- after_elapsed and activity_threshold grants
- temporary role expiry

Uses APScheduler for background task management.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from rolecore.core.config import settings
from rolecore.core.logging import automation_logger
from .evaluator import AutoAssignmentEvaluator

SWEEP_JOB_ID = "role_sweep"


# ============================================================================
# Scheduler State
# ============================================================================

_scheduler: Optional[AsyncIOScheduler] = None
_evaluator: Optional[AutoAssignmentEvaluator] = None
_last_sweep: Optional[datetime] = None
_last_result: Optional[Dict[str, Any]] = None
_scheduler_enabled: bool = False


def get_scheduler_status() -> dict:
    """Get current scheduler status."""
    jobs = []
    if _scheduler and _scheduler.running:
        for job in _scheduler.get_jobs():
            next_run = job.next_run_time
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
            })

    return {
        "enabled": _scheduler_enabled,
        "running": _scheduler.running if _scheduler else False,
        "last_sweep": _last_sweep.isoformat() if _last_sweep else None,
        "last_result": _last_result,
        "scheduled_jobs": jobs,
    }


# ============================================================================
# Sweep Job
# ============================================================================

async def run_role_sweep() -> Dict[str, Any]:
    """Run one sweep over every tenant. Never raises; errors end up in the result."""
    global _last_sweep, _last_result

    if _evaluator is None:
        return {"status": "error", "message": "Scheduler has no evaluator"}

    automation_logger.debug("[Role Scheduler] Running role sweep")
    now = datetime.now(timezone.utc)
    try:
        result = await _evaluator.sweep(now)
    except Exception as e:
        automation_logger.error("[Role Scheduler] Role sweep failed", error=e)
        _last_result = {"status": "error", "error": str(e)}
        return _last_result

    _last_sweep = now
    _last_result = {"status": "completed", **result.as_dict(), "swept_at": now.isoformat()}
    return _last_result


# ============================================================================
# Scheduler Setup & Shutdown
# ============================================================================

def start_scheduler(
    evaluator: AutoAssignmentEvaluator,
    interval_seconds: Optional[int] = None,
) -> bool:
    """
    Start the sweep job.

    Args:
        evaluator: evaluator whose sweep() runs on every tick
        interval_seconds: seconds between sweeps (ROLE_SWEEP_INTERVAL_SECONDS by default)

    Returns:
        False when automations are disabled or the scheduler is already running.
    """
    global _scheduler, _evaluator, _scheduler_enabled

    if not settings.AUTOMATIONS_ENABLED:
        automation_logger.info("[Role Scheduler] Automations disabled, not starting")
        return False

    if _scheduler is not None and _scheduler.running:
        automation_logger.warning("[Role Scheduler] Scheduler already running")
        return False

    interval = interval_seconds or settings.ROLE_SWEEP_INTERVAL_SECONDS
    _evaluator = evaluator
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        run_role_sweep,
        IntervalTrigger(seconds=interval),
        id=SWEEP_JOB_ID,
        name="Role Auto-Assignment Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    _scheduler_enabled = True

    automation_logger.info(f"[Role Scheduler] Started, sweeping every {interval}s")
    return True


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    global _scheduler, _evaluator, _scheduler_enabled

    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        automation_logger.info("[Role Scheduler] Scheduler shutdown")

    _scheduler = None
    _evaluator = None
    _scheduler_enabled = False
