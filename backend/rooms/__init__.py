from .policy import RoomKey, RoomKind, authorize_join, room_key_for
from .timers import AsyncioIntervalScheduler, IntervalScheduler, RoomTimer, TimerKind
from .registry import Outbound, RoomListing, RoomRegistry
from .gateway import RealtimeGateway, SocketBroadcaster

__all__ = [
    'RoomKey',
    'RoomKind',
    'authorize_join',
    'room_key_for',
    'AsyncioIntervalScheduler',
    'IntervalScheduler',
    'RoomTimer',
    'TimerKind',
    'Outbound',
    'RoomListing',
    'RoomRegistry',
    'RealtimeGateway',
    'SocketBroadcaster'
]
