"""
Room access policy.

Room keys carry their kind in their structure:

* personal rooms: ``personal:<ownerId>:<name>`` - only the owner may join;
* shared rooms: ``<name>`` with no ``:`` - anyone who knows the key may join.

``:`` is reserved for the personal form, so a shared key can never be read
as a personal one.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from errors import AccessDenied, InvalidArgument

logger = logging.getLogger(__name__)

PERSONAL_PREFIX = "personal"
SEPARATOR = ":"
ROOM_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


class RoomKind(str, Enum):
    PERSONAL = "personal"
    SHARED = "shared"


@dataclass(frozen=True)
class RoomKey:
    kind: RoomKind
    name: str
    owner_id: Optional[str] = None

    def __str__(self):
        if self.kind is RoomKind.PERSONAL:
            return SEPARATOR.join([PERSONAL_PREFIX, self.owner_id, self.name])
        return self.name

    @classmethod
    def parse(cls, raw) -> Optional["RoomKey"]:
        """The key ``raw`` denotes, or None if it follows neither convention"""
        if not isinstance(raw, str):
            return None

        if SEPARATOR in raw:
            parts = raw.split(SEPARATOR)
            if len(parts) != 3 or parts[0] != PERSONAL_PREFIX:
                return None
            _, owner_id, name = parts
            if not owner_id or not ROOM_NAME_PATTERN.match(name):
                return None
            return cls(kind=RoomKind.PERSONAL, name=name, owner_id=owner_id)

        if ROOM_NAME_PATTERN.match(raw):
            return cls(kind=RoomKind.SHARED, name=raw)
        return None


def room_key_for(identity_id: str, room_name, kind=RoomKind.SHARED) -> RoomKey:
    """Key for a room the caller is creating"""
    if not isinstance(room_name, str) or not ROOM_NAME_PATTERN.match(room_name):
        raise InvalidArgument("Room name must be 1-64 letters, digits, '_' or '-'")
    try:
        kind = RoomKind(kind or RoomKind.SHARED)
    except ValueError:
        raise InvalidArgument("Room kind must be 'personal' or 'shared'")

    if kind is RoomKind.PERSONAL:
        return RoomKey(kind=kind, name=room_name, owner_id=identity_id)
    return RoomKey(kind=kind, name=room_name)


def authorize_join(identity_id: str, raw_key) -> RoomKey:
    """
    Decide whether ``identity_id`` may join the room ``raw_key``.

    Rules, first match wins:
      1. personal room owned by the caller - allow
      2. shared room - allow (the key is the credential)
      3. anything else - AccessDenied
    """
    if not identity_id:
        raise AccessDenied("Authentication required")

    key = RoomKey.parse(raw_key)

    if key is not None and key.kind is RoomKind.PERSONAL and key.owner_id == identity_id:
        return key

    if key is not None and key.kind is RoomKind.SHARED:
        return key

    logger.warning("Room access denied: user %s cannot access room %r", identity_id, raw_key)
    raise AccessDenied("You do not have access to this room")
