"""
Realtime Gateway
================

Socket.IO front door for study rooms.

A connection is authenticated exactly once, at connect time, and bound to
the identity its token names. From then on every event is dispatched with
that bound identity; identity-like fields in payloads are ignored.

Handlers translate an event into a ``RoomRegistry`` call and deliver the
resulting messages. Failures are reported to the offending connection as
an ``error`` event and never drop the connection.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import socketio

from auth import Identity, TokenCodec
from errors import TrackWiseError, Unauthenticated, client_message
from .policy import RoomKind, authorize_join, room_key_for
from .registry import Outbound, RoomRegistry
from .timers import TimerKind

logger = logging.getLogger(__name__)


class SocketBroadcaster:
    """Delivers registry messages one recipient sid at a time"""

    def __init__(self, sio: socketio.AsyncServer):
        self.sio = sio

    async def deliver(self, messages: List[Outbound]):
        for message in messages:
            for sid in message.recipients:
                await self.sio.emit(message.event, message.data, to=sid)


@dataclass(frozen=True)
class Connection:
    sid: str
    identity_id: str
    display_name: str


def _room_key(data) -> Optional[str]:
    """Room key from a payload; clients send it as roomKey, roomId or a bare string"""
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        return data.get("roomKey") or data.get("roomId")
    return None


def _field(data, name, default=None):
    if isinstance(data, dict):
        return data.get(name, default)
    return default


class RealtimeGateway:
    def __init__(
        self,
        sio: socketio.AsyncServer,
        registry: RoomRegistry,
        broadcaster: SocketBroadcaster,
        codec: TokenCodec,
        resolve_identity: Callable[[str], Awaitable[Optional[Identity]]],
    ):
        self.sio = sio
        self.registry = registry
        self.broadcaster = broadcaster
        self.codec = codec
        self.resolve_identity = resolve_identity
        self.connections: Dict[str, Connection] = {}

        self.handlers = {
            "createRoom": self.create_room,
            "joinRoom": self.join_room,
            "leaveRoom": self.leave_room,
            "addTask": self.add_task,
            "editTask": self.edit_task,
            "deleteTask": self.delete_task,
            "toggleTask": self.toggle_task,
            "startPomodoro": self.timer_handler(TimerKind.POMODORO, "start"),
            "pausePomodoro": self.timer_handler(TimerKind.POMODORO, "pause"),
            "resetPomodoro": self.timer_handler(TimerKind.POMODORO, "reset"),
            "changeDuration": self.timer_handler(TimerKind.POMODORO, "duration"),
            "startBreak": self.timer_handler(TimerKind.BREAK, "start"),
            "pauseBreak": self.timer_handler(TimerKind.BREAK, "pause"),
            "resetBreak": self.timer_handler(TimerKind.BREAK, "reset"),
            "changeBreakDuration": self.timer_handler(TimerKind.BREAK, "duration"),
            "join-whiteboard-room": self.join_whiteboard,
            "leave-whiteboard-room": self.leave_whiteboard,
            "drawing": self.drawing,
            "canvasState": self.canvas_state,
            "clearCanvas": self.clear_canvas,
            "sendMessage": self.send_message,
        }

    def register(self):
        """Attach the connect/disconnect hooks and every event handler to ``sio``"""
        self.sio.on("connect", self.on_connect)
        self.sio.on("disconnect", self.on_disconnect)
        for event in self.handlers:
            self.sio.on(event, self._dispatcher(event))

    def _dispatcher(self, event: str):
        async def dispatch(sid, data=None):
            await self.handle(sid, event, data)
        return dispatch

    # ==================== CONNECTION LIFECYCLE ====================

    @staticmethod
    def _token_from(environ: dict, auth) -> Optional[str]:
        if isinstance(auth, dict) and auth.get("token"):
            return auth["token"]
        header = (environ or {}).get("HTTP_AUTHORIZATION", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() == "bearer" and token:
            return token.strip()
        return None

    async def on_connect(self, sid, environ, auth=None):
        try:
            token = self._token_from(environ, auth)
            if not token:
                raise Unauthenticated()
            claim = self.codec.verify(token)
            identity = await self.resolve_identity(claim.identity_id)
            if identity is None:
                raise Unauthenticated("User not found")
        except TrackWiseError as e:
            logger.warning("Socket connection %s refused: %s", sid, e.message)
            raise socketio.exceptions.ConnectionRefusedError(client_message(e))

        self.connections[sid] = Connection(
            sid=sid,
            identity_id=identity.id,
            display_name=identity.name or identity.email,
        )
        logger.info("Socket %s connected as user %s", sid, identity.id)

    async def on_disconnect(self, sid, reason=None):
        connection = self.connections.pop(sid, None)
        messages = self.registry.disconnect(sid)
        if connection is not None:
            logger.info("Socket %s (user %s) disconnected: %s", sid, connection.identity_id, reason)
        await self.broadcaster.deliver(messages)

    # ==================== DISPATCH ====================

    async def handle(self, sid, event, data=None):
        """Run one event for ``sid``; any failure becomes an ``error`` event to that sid"""
        try:
            connection = self.connections.get(sid)
            if connection is None:
                raise Unauthenticated()
            messages = self.handlers[event](connection, data)
        except TrackWiseError as e:
            if e.status_code >= 500:
                logger.error("Event %s from %s failed: %s", event, sid, e.message)
            await self._report(sid, event, e)
            return
        except Exception:
            logger.exception("Unhandled error in event %s from %s", event, sid)
            await self._report(sid, event, TrackWiseError())
            return

        await self.broadcaster.deliver(messages)

    async def _report(self, sid, event, error: TrackWiseError):
        await self.sio.emit("error", {
            "message": client_message(error),
            "code": error.code,
            "event": event,
        }, to=sid)

    # ==================== ROOM MEMBERSHIP ====================

    def create_room(self, connection: Connection, data):
        key = room_key_for(
            connection.identity_id,
            _field(data, "roomName"),
            _field(data, "kind", RoomKind.SHARED.value),
        )
        return self.registry.join(connection.sid, connection.identity_id, connection.display_name, key)

    def join_room(self, connection: Connection, data):
        key = authorize_join(connection.identity_id, _room_key(data))
        return self.registry.join(connection.sid, connection.identity_id, connection.display_name, key)

    def leave_room(self, connection: Connection, data):
        return self.registry.leave(connection.sid, _room_key(data))

    # ==================== SHARED TASKS ====================

    def add_task(self, connection: Connection, data):
        text = _field(data, "task")
        if isinstance(text, dict):
            text = text.get("text")
        return self.registry.add_task(connection.sid, _room_key(data), text)

    def edit_task(self, connection: Connection, data):
        return self.registry.edit_task(
            connection.sid, _room_key(data), _field(data, "taskId"), _field(data, "newText"),
        )

    def delete_task(self, connection: Connection, data):
        return self.registry.delete_task(connection.sid, _room_key(data), _field(data, "taskId"))

    def toggle_task(self, connection: Connection, data):
        return self.registry.toggle_task(
            connection.sid, _room_key(data), _field(data, "taskId"), _field(data, "completed"),
        )

    # ==================== TIMERS ====================

    def timer_handler(self, kind: TimerKind, action: str):
        def handler(connection: Connection, data):
            room_key = _room_key(data)
            if action == "start":
                return self.registry.start_timer(connection.sid, room_key, kind, _field(data, "duration"))
            if action == "pause":
                return self.registry.pause_timer(connection.sid, room_key, kind)
            if action == "reset":
                return self.registry.reset_timer(connection.sid, room_key, kind)
            return self.registry.change_duration(connection.sid, room_key, kind, _field(data, "duration"))
        return handler

    # ==================== WHITEBOARD ====================

    def join_whiteboard(self, connection: Connection, data):
        return self.registry.join_whiteboard(connection.sid, _room_key(data))

    def leave_whiteboard(self, connection: Connection, data):
        return self.registry.leave_whiteboard(connection.sid, _room_key(data))

    def drawing(self, connection: Connection, data):
        return self.registry.relay_drawing(connection.sid, _room_key(data), data)

    def canvas_state(self, connection: Connection, data):
        snapshot = _field(data, "imageData", _field(data, "snapshot"))
        return self.registry.store_canvas(connection.sid, _room_key(data), snapshot)

    def clear_canvas(self, connection: Connection, data):
        return self.registry.clear_canvas(connection.sid, _room_key(data))

    # ==================== CHAT ====================

    def send_message(self, connection: Connection, data):
        return self.registry.send_message(connection.sid, _room_key(data), _field(data, "message"))
