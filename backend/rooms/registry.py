"""
Room Registry
=============

The in-process authority over every live collaborative room.

All room state (members, shared tasks, timers, whiteboard snapshot) lives
here and nowhere else. Every operation is a synchronous method that mutates
one room and returns the ``Outbound`` messages it produced; the caller
delivers them afterwards. Because operations never suspend, each one is
applied atomically with respect to every other event on the event loop,
in arrival order.

Timer ticks are the only events the registry originates itself. They are
delivered through the ``deliver`` coroutine given at construction.

Lifecycle per room::

    Empty ──first join──▶ Active ──last leave──▶ Empty (room discarded)

Discarding a room stops both of its timers, so no interval outlives the
last member.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from errors import AccessDenied, InvalidArgument, NotFound
from .policy import RoomKey
from .timers import (
    TICK_SECONDS,
    AsyncioIntervalScheduler,
    IntervalScheduler,
    RoomTimer,
    TimerKind,
)

logger = logging.getLogger(__name__)

MAX_TASK_LENGTH = 500
MAX_MESSAGE_LENGTH = 2000
MAX_DURATION_SECONDS = 24 * 60 * 60

# Listings announced over REST that no socket has joined yet
LISTING_TTL_SECONDS = 60 * 60
MAX_PENDING_LISTINGS = 1000

# Fields a client may not assert about itself in a whiteboard stroke
IDENTITY_FIELDS = {"userId", "user_id", "ownerId", "owner_id", "username", "roomId", "roomKey"}


@dataclass(frozen=True)
class Outbound:
    """One event to send to a set of connections"""

    event: str
    data: Any
    recipients: tuple


@dataclass
class Member:
    sid: str
    identity_id: str
    display_name: str
    is_host: bool = False

    def to_payload(self) -> dict:
        return {"username": self.display_name, "isHost": self.is_host}


@dataclass
class SharedTask:
    id: str
    text: str
    completed: bool = False

    def to_payload(self) -> dict:
        return {"id": self.id, "text": self.text, "completed": self.completed}


@dataclass
class RoomListing:
    """Room metadata announced over REST before anyone connects"""

    room_key: str
    topic: Optional[str]
    creator: str
    participants_limit: int
    created_by: str
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    announced_at: float = 0.0

    def to_payload(self) -> dict:
        return {
            "roomKey": self.room_key,
            "topic": self.topic,
            "creator": self.creator,
            "participantsLimit": self.participants_limit,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
        }


class Room:
    def __init__(self, key: RoomKey, listing: Optional[RoomListing] = None):
        self.key = key
        self.key_str = str(key)
        self.listing = listing
        self.members: Dict[str, Member] = {}
        self.tasks: List[SharedTask] = []
        self.pomodoro = RoomTimer(TimerKind.POMODORO)
        self.break_timer = RoomTimer(TimerKind.BREAK)
        self.whiteboard_viewers: Set[str] = set()
        self.whiteboard_snapshot: Optional[Any] = None

    def timer(self, kind: TimerKind) -> RoomTimer:
        return self.pomodoro if kind is TimerKind.POMODORO else self.break_timer

    def timers(self) -> Sequence[RoomTimer]:
        return (self.pomodoro, self.break_timer)

    def member_sids(self, exclude: Optional[str] = None) -> tuple:
        return tuple(sid for sid in self.members if sid != exclude)

    def member_names(self) -> List[str]:
        return [member.display_name for member in self.members.values()]

    def find_task(self, task_id) -> SharedTask:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise NotFound("Task not found")

    def task_payloads(self) -> List[dict]:
        return [task.to_payload() for task in self.tasks]

    def timer_payload(self, kind: TimerKind) -> dict:
        return {"roomKey": self.key_str, **self.timer(kind).state.to_payload()}

    def snapshot(self) -> dict:
        """Everything a late joiner needs to converge on the current view"""
        return {
            "roomKey": self.key_str,
            "kind": self.key.kind.value,
            "topic": self.listing.topic if self.listing else None,
            "members": self.member_names(),
            "participants": [member.to_payload() for member in self.members.values()],
            "tasks": self.task_payloads(),
            "pomodoro": self.pomodoro.state.to_payload(),
            "breakTimer": self.break_timer.state.to_payload(),
            "whiteboard": self.whiteboard_snapshot,
        }


def _minutes_to_seconds(minutes) -> int:
    if isinstance(minutes, bool) or not isinstance(minutes, (int, float)):
        raise InvalidArgument("Duration must be a number of minutes")
    seconds = int(round(minutes * 60))
    if seconds <= 0 or seconds > MAX_DURATION_SECONDS:
        raise InvalidArgument("Duration must be between 1 second and 24 hours")
    return seconds


def _optional_seconds(duration) -> Optional[int]:
    if duration is None:
        return None
    if isinstance(duration, bool) or not isinstance(duration, (int, float)):
        raise InvalidArgument("Duration must be a number of seconds")
    seconds = int(duration)
    if seconds <= 0 or seconds > MAX_DURATION_SECONDS:
        raise InvalidArgument("Duration must be between 1 second and 24 hours")
    return seconds


def _clean_text(text, limit: int, what: str) -> str:
    if not isinstance(text, str) or not text.strip():
        raise InvalidArgument(f"{what} cannot be empty")
    text = text.strip()
    if len(text) > limit:
        raise InvalidArgument(f"{what} is too long")
    return text


class RoomRegistry:
    """Owns every live room; see the module docstring"""

    def __init__(
        self,
        scheduler: Optional[IntervalScheduler] = None,
        deliver: Optional[Callable[[List[Outbound]], Awaitable[None]]] = None,
        tick_seconds: float = TICK_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.scheduler = scheduler or AsyncioIntervalScheduler()
        self.deliver = deliver
        self.tick_seconds = tick_seconds
        self.clock = clock
        self.listing_ttl = LISTING_TTL_SECONDS
        self.max_pending_listings = MAX_PENDING_LISTINGS
        self._rooms: Dict[str, Room] = {}
        self._listings: Dict[str, RoomListing] = {}
        self._memberships: Dict[str, Set[str]] = {}

    # ---- introspection ----

    def get_room(self, room_key) -> Optional[Room]:
        return self._rooms.get(str(room_key))

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def rooms_of(self, sid: str) -> Set[str]:
        return set(self._memberships.get(sid, ()))

    # ---- listings ----

    @property
    def listing_count(self) -> int:
        return len(self._listings)

    def announce(self, listing: RoomListing):
        listing.announced_at = self.clock()
        self._listings.pop(listing.room_key, None)
        self._listings[listing.room_key] = listing
        room = self._rooms.get(listing.room_key)
        if room is not None and room.listing is None:
            room.listing = listing
        self._prune_listings()

    def _prune_listings(self):
        """Drop listings nobody joined once they expire or exceed the cap, oldest first"""
        now = self.clock()
        pending = [key for key in self._listings if key not in self._rooms]
        expired = {key for key in pending if now - self._listings[key].announced_at >= self.listing_ttl}
        waiting = [key for key in pending if key not in expired]
        overflow = waiting[:max(len(waiting) - self.max_pending_listings, 0)]

        for key in [*expired, *overflow]:
            del self._listings[key]
        if expired or overflow:
            logger.info("Dropped %d unjoined room listing(s)", len(expired) + len(overflow))

    def describe(self, room_key: str) -> Optional[dict]:
        listing = self._listings.get(room_key)
        return listing.to_payload() if listing else None

    # ---- membership ----

    def _room_for_member(self, sid: str, room_key) -> Room:
        room = self._rooms.get(str(room_key)) if room_key is not None else None
        # Same answer whether the room is missing or the caller is not in it
        if room is None or sid not in room.members:
            raise NotFound("Room not found")
        return room

    def join(self, sid: str, identity_id: str, display_name: str, key: RoomKey) -> List[Outbound]:
        """Add a connection to a room, creating the room if it does not exist"""
        key_str = str(key)
        room = self._rooms.get(key_str)

        if room is not None and sid in room.members:
            return self._snapshot_messages(room, sid)

        if room is None:
            room = Room(key, listing=self._listings.get(key_str))
        limit = room.listing.participants_limit if room.listing else None
        if limit is not None and len(room.members) >= limit:
            raise AccessDenied("Room is full")

        if key_str not in self._rooms:
            self._rooms[key_str] = room
            logger.info("Room %s created (%s)", key_str, key.kind.value)

        member = Member(
            sid=sid,
            identity_id=identity_id,
            display_name=display_name,
            is_host=not room.members,
        )
        room.members[sid] = member
        self._memberships.setdefault(sid, set()).add(key_str)
        logger.info("User %s joined room %s (%d members)", identity_id, key_str, len(room.members))

        messages = self._snapshot_messages(room, sid)
        others = room.member_sids(exclude=sid)
        if others:
            messages.append(Outbound("userJoined", {
                "roomKey": key_str,
                "username": display_name,
                "members": room.member_names(),
                "participants": [m.to_payload() for m in room.members.values()],
            }, others))
        return messages

    def _snapshot_messages(self, room: Room, sid: str) -> List[Outbound]:
        return [
            Outbound("roomJoined", room.snapshot(), (sid,)),
            Outbound(TimerKind.POMODORO.events.state, room.timer_payload(TimerKind.POMODORO), (sid,)),
            Outbound(TimerKind.BREAK.events.state, room.timer_payload(TimerKind.BREAK), (sid,)),
        ]

    def leave(self, sid: str, room_key) -> List[Outbound]:
        """Remove a connection from one room; a no-op if it is not a member"""
        room = self._rooms.get(str(room_key)) if room_key is not None else None
        if room is None or sid not in room.members:
            return []
        return self._remove_member(room, sid)

    def disconnect(self, sid: str) -> List[Outbound]:
        """Remove a connection from every room it joined"""
        messages = []
        for key_str in sorted(self._memberships.pop(sid, set())):
            room = self._rooms.get(key_str)
            if room is not None and sid in room.members:
                messages.extend(self._remove_member(room, sid))
        return messages

    def _remove_member(self, room: Room, sid: str) -> List[Outbound]:
        member = room.members.pop(sid)
        was_viewer = sid in room.whiteboard_viewers
        room.whiteboard_viewers.discard(sid)

        memberships = self._memberships.get(sid)
        if memberships is not None:
            memberships.discard(room.key_str)
            if not memberships:
                del self._memberships[sid]

        logger.info("User %s left room %s (%d members)", member.identity_id, room.key_str, len(room.members))

        if not room.members:
            self._discard(room)
            return []

        if member.is_host:
            next(iter(room.members.values())).is_host = True

        messages = [Outbound("userLeft", {
            "roomKey": room.key_str,
            "username": member.display_name,
            "members": room.member_names(),
            "participants": [m.to_payload() for m in room.members.values()],
        }, room.member_sids())]
        if was_viewer and room.whiteboard_viewers:
            messages.append(self._whiteboard_users(room))
        return messages

    def _discard(self, room: Room):
        for timer in room.timers():
            timer.stop()
        room.whiteboard_snapshot = None
        room.whiteboard_viewers.clear()
        if self._rooms.get(room.key_str) is room:
            del self._rooms[room.key_str]
        self._listings.pop(room.key_str, None)
        logger.info("Room %s is empty and was discarded", room.key_str)

    # ---- shared tasks ----

    def _tasks_updated(self, room: Room) -> Outbound:
        return Outbound("tasksUpdated", {"roomKey": room.key_str, "tasks": room.task_payloads()}, room.member_sids())

    def add_task(self, sid: str, room_key, text) -> List[Outbound]:
        room = self._room_for_member(sid, room_key)
        task = SharedTask(id=str(uuid.uuid4()), text=_clean_text(text, MAX_TASK_LENGTH, "Task"))
        room.tasks.append(task)
        return [
            Outbound("taskAdded", task.to_payload(), room.member_sids()),
            self._tasks_updated(room),
        ]

    def edit_task(self, sid: str, room_key, task_id, text) -> List[Outbound]:
        room = self._room_for_member(sid, room_key)
        task = room.find_task(task_id)
        task.text = _clean_text(text, MAX_TASK_LENGTH, "Task")
        return [
            Outbound("taskEdited", {"taskId": task.id, "newText": task.text}, room.member_sids()),
            self._tasks_updated(room),
        ]

    def delete_task(self, sid: str, room_key, task_id) -> List[Outbound]:
        room = self._room_for_member(sid, room_key)
        task = room.find_task(task_id)
        room.tasks.remove(task)
        return [
            Outbound("taskDeleted", task.id, room.member_sids()),
            self._tasks_updated(room),
        ]

    def toggle_task(self, sid: str, room_key, task_id, completed=None) -> List[Outbound]:
        room = self._room_for_member(sid, room_key)
        task = room.find_task(task_id)
        task.completed = (not task.completed) if completed is None else bool(completed)
        return [
            Outbound("taskToggled", {"taskId": task.id, "completed": task.completed}, room.member_sids()),
            self._tasks_updated(room),
        ]

    # ---- timers ----

    def start_timer(self, sid: str, room_key, kind: TimerKind, duration=None) -> List[Outbound]:
        room = self._room_for_member(sid, room_key)
        seconds = _optional_seconds(duration)
        timer = room.timer(kind)

        generation = timer.start(seconds)
        timer.attach(self.scheduler.every(self.tick_seconds, partial(self._tick, room, kind, generation)))
        logger.info("%s timer started in room %s (%ds left)", kind.value, room.key_str, timer.state.remaining_seconds)

        return [Outbound(timer.events.started, room.timer_payload(kind), room.member_sids())]

    def pause_timer(self, sid: str, room_key, kind: TimerKind) -> List[Outbound]:
        room = self._room_for_member(sid, room_key)
        timer = room.timer(kind)
        timer.pause()
        return [Outbound(timer.events.paused, room.timer_payload(kind), room.member_sids())]

    def reset_timer(self, sid: str, room_key, kind: TimerKind) -> List[Outbound]:
        room = self._room_for_member(sid, room_key)
        timer = room.timer(kind)
        timer.reset()
        return [Outbound(timer.events.reset, room.timer_payload(kind), room.member_sids())]

    def change_duration(self, sid: str, room_key, kind: TimerKind, minutes) -> List[Outbound]:
        room = self._room_for_member(sid, room_key)
        seconds = _minutes_to_seconds(minutes)
        timer = room.timer(kind)
        if not timer.change_duration(seconds):
            raise InvalidArgument("Pause the timer before changing its duration")

        return [Outbound(timer.events.duration_updated, {
            **room.timer_payload(kind),
            "duration": minutes,
        }, room.member_sids())]

    async def _tick(self, room: Room, kind: TimerKind, generation: int) -> bool:
        """One interval callback; returns False once the interval should stop"""
        if self._rooms.get(room.key_str) is not room:
            return False
        timer = room.timer(kind)
        if not timer.is_current(generation):
            return False

        completed = timer.tick()
        if completed:
            logger.info("%s session complete in room %s", kind.value, room.key_str)
            message = Outbound(timer.events.complete, room.timer_payload(kind), room.member_sids())
        else:
            logger.debug("%s tick in room %s: %ds", kind.value, room.key_str, timer.state.remaining_seconds)
            message = Outbound(timer.events.tick, {
                "roomKey": room.key_str,
                "remainingSeconds": timer.state.remaining_seconds,
                "isRunning": timer.state.is_running,
            }, room.member_sids())

        await self._deliver_safely([message])
        return not completed

    async def _deliver_safely(self, messages: List[Outbound]):
        if self.deliver is None:
            return
        try:
            await self.deliver(messages)
        except Exception:
            # The countdown carries on; members that missed a tick catch up on the next one
            logger.exception("Failed to deliver timer events")

    # ---- whiteboard ----

    def _whiteboard_users(self, room: Room) -> Outbound:
        return Outbound("whiteboard-users", len(room.whiteboard_viewers), tuple(sorted(room.whiteboard_viewers)))

    def join_whiteboard(self, sid: str, room_key) -> List[Outbound]:
        room = self._room_for_member(sid, room_key)
        room.whiteboard_viewers.add(sid)
        messages = [Outbound("whiteboard-connected", {"roomId": room.key_str}, (sid,))]
        if room.whiteboard_snapshot is not None:
            messages.append(Outbound("canvasState", room.whiteboard_snapshot, (sid,)))
        messages.append(self._whiteboard_users(room))
        return messages

    def leave_whiteboard(self, sid: str, room_key) -> List[Outbound]:
        room = self._rooms.get(str(room_key)) if room_key is not None else None
        if room is None or sid not in room.whiteboard_viewers:
            return []
        room.whiteboard_viewers.discard(sid)
        return [self._whiteboard_users(room)] if room.whiteboard_viewers else []

    def _viewer_room(self, sid: str, room_key) -> Room:
        room = self._room_for_member(sid, room_key)
        if sid not in room.whiteboard_viewers:
            raise InvalidArgument("Open the whiteboard before drawing")
        return room

    def _other_viewers(self, room: Room, sid: str) -> tuple:
        return tuple(sorted(viewer for viewer in room.whiteboard_viewers if viewer != sid))

    def relay_drawing(self, sid: str, room_key, stroke: dict) -> List[Outbound]:
        """Forward one stroke to the other viewers; strokes are not retained"""
        room = self._viewer_room(sid, room_key)
        if not isinstance(stroke, dict):
            raise InvalidArgument("Drawing data must be an object")
        payload = {key: value for key, value in stroke.items() if key not in IDENTITY_FIELDS}
        payload["userId"] = room.members[sid].identity_id
        others = self._other_viewers(room, sid)
        return [Outbound("drawing", payload, others)] if others else []

    def store_canvas(self, sid: str, room_key, snapshot) -> List[Outbound]:
        """Replace the retained full-canvas snapshot and relay it"""
        room = self._viewer_room(sid, room_key)
        if snapshot is None:
            raise InvalidArgument("Canvas snapshot is required")
        room.whiteboard_snapshot = snapshot
        others = self._other_viewers(room, sid)
        return [Outbound("canvasState", snapshot, others)] if others else []

    def clear_canvas(self, sid: str, room_key) -> List[Outbound]:
        room = self._viewer_room(sid, room_key)
        room.whiteboard_snapshot = None
        others = self._other_viewers(room, sid)
        return [Outbound("clearCanvas", {"roomId": room.key_str}, others)] if others else []

    # ---- chat ----

    def send_message(self, sid: str, room_key, text) -> List[Outbound]:
        room = self._room_for_member(sid, room_key)
        member = room.members[sid]
        return [Outbound("newMessage", {
            "roomKey": room.key_str,
            "username": member.display_name,
            "userId": member.identity_id,
            "message": _clean_text(text, MAX_MESSAGE_LENGTH, "Message"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }, room.member_sids())]

    # ---- shutdown ----

    def shutdown(self):
        """Stop every timer and forget every room"""
        for room in list(self._rooms.values()):
            self._discard(room)
        self._listings.clear()
        self._memberships.clear()
        logger.info("Room registry shut down")
