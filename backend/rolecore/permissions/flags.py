"""
Permission flags and the PermissionSet bitmask.

Flag bit positions are part of the stored data format: a flag's value never
changes once shipped and new flags are only appended. Bump
PERMISSIONS_VERSION whenever a flag is appended.
"""
from enum import IntFlag
from functools import reduce
from typing import Iterable

from .exceptions import UnknownPermission

PERMISSIONS_VERSION = 1


class Permission(IntFlag):
    CREATE_INSTANT_INVITE = 1 << 0
    KICK_MEMBERS = 1 << 1
    BAN_MEMBERS = 1 << 2
    ADMINISTRATOR = 1 << 3
    MANAGE_CHANNELS = 1 << 4
    MANAGE_GUILD = 1 << 5
    ADD_REACTIONS = 1 << 6
    VIEW_AUDIT_LOG = 1 << 7
    PRIORITY_SPEAKER = 1 << 8
    STREAM = 1 << 9
    VIEW_CHANNEL = 1 << 10
    SEND_MESSAGES = 1 << 11
    SEND_TTS_MESSAGES = 1 << 12
    MANAGE_MESSAGES = 1 << 13
    EMBED_LINKS = 1 << 14
    ATTACH_FILES = 1 << 15
    READ_MESSAGE_HISTORY = 1 << 16
    MENTION_EVERYONE = 1 << 17
    USE_EXTERNAL_EMOJIS = 1 << 18
    VIEW_GUILD_INSIGHTS = 1 << 19
    CONNECT = 1 << 20
    SPEAK = 1 << 21
    MUTE_MEMBERS = 1 << 22
    DEAFEN_MEMBERS = 1 << 23
    MOVE_MEMBERS = 1 << 24
    USE_VAD = 1 << 25
    CHANGE_NICKNAME = 1 << 26
    MANAGE_NICKNAMES = 1 << 27
    MANAGE_ROLES = 1 << 28
    MANAGE_WEBHOOKS = 1 << 29
    MANAGE_EMOJIS_AND_STICKERS = 1 << 30
    USE_APPLICATION_COMMANDS = 1 << 31
    REQUEST_TO_SPEAK = 1 << 32
    MANAGE_EVENTS = 1 << 33
    MANAGE_THREADS = 1 << 34
    CREATE_PUBLIC_THREADS = 1 << 35
    CREATE_PRIVATE_THREADS = 1 << 36
    USE_EXTERNAL_STICKERS = 1 << 37
    SEND_MESSAGES_IN_THREADS = 1 << 38
    USE_EMBEDDED_ACTIVITIES = 1 << 39
    MODERATE_MEMBERS = 1 << 40
    VIEW_CREATOR_MONETIZATION_ANALYTICS = 1 << 41
    USE_SOUNDBOARD = 1 << 42
    CREATE_GUILD_EXPRESSIONS = 1 << 43
    CREATE_EVENTS = 1 << 44
    USE_EXTERNAL_SOUNDS = 1 << 45
    SEND_VOICE_MESSAGES = 1 << 46


ALL_FLAGS: int = reduce(lambda acc, flag: acc | flag.value, Permission, 0)


class PermissionSet:
    """Immutable set of permission flags backed by a fixed-width integer.

    Bits outside the known enumeration are dropped on construction, so two
    sets compare equal whenever they grant the same known flags.
    """

    __slots__ = ("_value",)

    def __init__(self, value: int = 0):
        self._value = int(value) & ALL_FLAGS

    # ---------------------- constructors ----------------------

    @classmethod
    def none(cls) -> "PermissionSet":
        return cls(0)

    @classmethod
    def all(cls) -> "PermissionSet":
        return cls(ALL_FLAGS)

    @classmethod
    def of(cls, *flags: Permission) -> "PermissionSet":
        return cls(reduce(lambda acc, flag: acc | int(flag), flags, 0))

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "PermissionSet":
        """Build a set from flag names such as ``"SEND_MESSAGES"``.

        Raises UnknownPermission listing every name that is not a flag.
        """
        names = list(names)
        invalid = [n for n in names if n not in Permission.__members__]
        if invalid:
            raise UnknownPermission(invalid)
        return cls.of(*(Permission[n] for n in names))

    # ---------------------- algebra ----------------------

    @property
    def value(self) -> int:
        return self._value

    def union(self, other: "PermissionSet | Permission | int") -> "PermissionSet":
        return PermissionSet(self._value | _mask(other))

    def intersect(self, other: "PermissionSet | Permission | int") -> "PermissionSet":
        return PermissionSet(self._value & _mask(other))

    def without(self, other: "PermissionSet | Permission | int") -> "PermissionSet":
        return PermissionSet(self._value & ~_mask(other))

    def contains(self, flag: Permission) -> bool:
        return bool(self._value & int(flag))

    def contains_all(self, mask: "PermissionSet | Permission | int") -> bool:
        m = _mask(mask)
        return self._value & m == m

    def is_empty(self) -> bool:
        return self._value == 0

    def flags(self) -> list[Permission]:
        return [flag for flag in Permission if self._value & flag.value]

    def names(self) -> list[str]:
        return [flag.name for flag in self.flags()]

    __or__ = union
    __and__ = intersect
    __sub__ = without

    def __contains__(self, flag: Permission) -> bool:
        return self.contains(flag)

    def __bool__(self) -> bool:
        return not self.is_empty()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PermissionSet):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)

    def __repr__(self) -> str:
        return f"PermissionSet({'|'.join(self.names()) or '0'})"


def _mask(value: "PermissionSet | Permission | int") -> int:
    if isinstance(value, PermissionSet):
        return value.value
    return int(value) & ALL_FLAGS


# Granted to the default role of a freshly initialized tenant.
DEFAULT_ROLE_PERMISSIONS = PermissionSet.of(
    Permission.CREATE_INSTANT_INVITE,
    Permission.ADD_REACTIONS,
    Permission.STREAM,
    Permission.VIEW_CHANNEL,
    Permission.SEND_MESSAGES,
    Permission.EMBED_LINKS,
    Permission.ATTACH_FILES,
    Permission.READ_MESSAGE_HISTORY,
    Permission.USE_EXTERNAL_EMOJIS,
    Permission.CONNECT,
    Permission.SPEAK,
    Permission.USE_VAD,
    Permission.CHANGE_NICKNAME,
    Permission.USE_APPLICATION_COMMANDS,
    Permission.SEND_MESSAGES_IN_THREADS,
)
