"""
Tests for the room registry: membership lifecycle, shared tasks, timers,
whiteboard and chat.
"""

import asyncio

import pytest

from errors import AccessDenied, InvalidArgument, NotFound
from rooms.policy import RoomKey, room_key_for
from rooms.registry import LISTING_TTL_SECONDS, RoomListing, RoomRegistry
from rooms.timers import AsyncioIntervalScheduler, TimerKind


ALICE = "64b7f0c2a1b2c3d4e5f60718"
BOB = "64b7f0c2a1b2c3d4e5f60719"
CAROL = "64b7f0c2a1b2c3d4e5f6071a"

ROOM = RoomKey.parse("study-group")


def find(messages, event):
    matching = [m for m in messages if m.event == event]
    assert matching, f"no {event} in {[m.event for m in messages]}"
    return matching[0]


def events(messages):
    return [m.event for m in messages]


@pytest.fixture
def registry(scheduler, recorder):
    return RoomRegistry(scheduler=scheduler, deliver=recorder.deliver)


@pytest.fixture
def pair(registry):
    """Alice (host) and Bob in the shared room"""
    registry.join("sid-a", ALICE, "Alice", ROOM)
    registry.join("sid-b", BOB, "Bob", ROOM)
    return registry


class TestMembership:

    def test_first_join_creates_room(self, registry):
        messages = registry.join("sid-a", ALICE, "Alice", ROOM)

        assert registry.room_count == 1
        joined = find(messages, "roomJoined")
        assert joined.recipients == ("sid-a",)
        assert joined.data["members"] == ["Alice"]
        assert joined.data["tasks"] == []
        assert joined.data["kind"] == "shared"
        assert joined.data["participants"] == [{"username": "Alice", "isHost": True}]
        assert find(messages, "pomodoroState").data["totalDurationSeconds"] == 25 * 60
        assert find(messages, "breakState").data["totalDurationSeconds"] == 5 * 60
        assert "userJoined" not in events(messages)

    def test_second_join_notifies_others(self, registry):
        registry.join("sid-a", ALICE, "Alice", ROOM)
        messages = registry.join("sid-b", BOB, "Bob", ROOM)

        assert find(messages, "roomJoined").data["members"] == ["Alice", "Bob"]
        user_joined = find(messages, "userJoined")
        assert user_joined.recipients == ("sid-a",)
        assert user_joined.data["username"] == "Bob"
        assert user_joined.data["members"] == ["Alice", "Bob"]

    def test_repeat_join_resends_snapshot_only(self, pair):
        messages = pair.join("sid-b", BOB, "Bob", ROOM)

        assert events(messages) == ["roomJoined", "pomodoroState", "breakState"]
        assert len(pair.get_room(ROOM).members) == 2

    def test_leave_notifies_and_promotes_host(self, pair):
        messages = pair.leave("sid-a", str(ROOM))

        user_left = find(messages, "userLeft")
        assert user_left.recipients == ("sid-b",)
        assert user_left.data["members"] == ["Bob"]
        assert pair.get_room(ROOM).members["sid-b"].is_host

    def test_last_leave_discards_room(self, pair):
        pair.leave("sid-a", str(ROOM))
        assert pair.leave("sid-b", str(ROOM)) == []

        assert pair.room_count == 0
        assert pair.get_room(ROOM) is None

    def test_extra_leaves_are_noops(self, pair):
        pair.leave("sid-a", str(ROOM))
        assert pair.leave("sid-a", str(ROOM)) == []
        assert pair.leave("sid-a", "unknown-room") == []
        assert pair.leave("sid-a", None) == []
        assert len(pair.get_room(ROOM).members) == 1

    def test_disconnect_leaves_every_room(self, registry):
        other = RoomKey.parse("chemistry")
        registry.join("sid-a", ALICE, "Alice", ROOM)
        registry.join("sid-a", ALICE, "Alice", other)
        registry.join("sid-b", BOB, "Bob", other)

        messages = registry.disconnect("sid-a")

        assert registry.get_room(ROOM) is None
        assert list(registry.get_room(other).members) == ["sid-b"]
        assert find(messages, "userLeft").recipients == ("sid-b",)
        assert registry.disconnect("sid-a") == []

    def test_participant_limit(self, registry):
        registry.announce(RoomListing(
            room_key="a1b2c3d4", topic="Calculus", creator="Alice",
            participants_limit=1, created_by=ALICE,
        ))
        key = RoomKey.parse("a1b2c3d4")

        joined = find(registry.join("sid-a", ALICE, "Alice", key), "roomJoined")
        assert joined.data["topic"] == "Calculus"
        with pytest.raises(AccessDenied):
            registry.join("sid-b", BOB, "Bob", key)
        assert registry.room_count == 1

    def test_listing_discarded_with_room(self, registry):
        registry.announce(RoomListing(
            room_key="a1b2c3d4", topic="Calculus", creator="Alice",
            participants_limit=5, created_by=ALICE,
        ))
        registry.join("sid-a", ALICE, "Alice", RoomKey.parse("a1b2c3d4"))
        assert registry.describe("a1b2c3d4")["participantsLimit"] == 5

        registry.leave("sid-a", "a1b2c3d4")
        assert registry.describe("a1b2c3d4") is None

    def test_personal_and_shared_rooms_are_distinct(self, registry):
        personal = room_key_for(ALICE, "focus", "personal")
        shared = room_key_for(ALICE, "focus")
        registry.join("sid-a", ALICE, "Alice", personal)
        registry.join("sid-b", BOB, "Bob", shared)

        assert registry.room_count == 2
        assert list(registry.get_room(personal).members) == ["sid-a"]


def listing(room_key):
    return RoomListing(room_key=room_key, topic=None, creator="Alice", participants_limit=5, created_by=ALICE)


class TestListings:

    @pytest.fixture
    def clock(self):
        return [0.0]

    @pytest.fixture
    def registry(self, scheduler, clock):
        return RoomRegistry(scheduler=scheduler, clock=lambda: clock[0])

    def test_unjoined_listing_expires(self, registry, clock):
        registry.announce(listing("a1b2c3d4"))
        clock[0] = LISTING_TTL_SECONDS + 1

        registry.announce(listing("b1b2c3d4"))

        assert registry.describe("a1b2c3d4") is None
        assert registry.describe("b1b2c3d4")["roomKey"] == "b1b2c3d4"
        assert registry.listing_count == 1

    def test_joined_listing_outlives_ttl(self, registry, clock):
        registry.announce(listing("a1b2c3d4"))
        registry.join("sid-a", ALICE, "Alice", RoomKey.parse("a1b2c3d4"))
        clock[0] = LISTING_TTL_SECONDS + 1

        registry.announce(listing("b1b2c3d4"))

        assert registry.describe("a1b2c3d4")["participantsLimit"] == 5

    def test_pending_listings_are_capped(self, registry):
        registry.max_pending_listings = 3
        for n in range(1000):
            registry.announce(listing(f"{n:08x}"))

        assert registry.listing_count == 3
        assert registry.describe(f"{0:08x}") is None
        assert [registry.describe(f"{n:08x}")["roomKey"] for n in (997, 998, 999)] == [
            f"{n:08x}" for n in (997, 998, 999)
        ]


class TestSharedTasks:

    def test_add_edit_toggle_delete(self, pair):
        added = pair.add_task("sid-a", str(ROOM), "  Read chapter 4  ")
        task = find(added, "taskAdded").data
        assert task["text"] == "Read chapter 4"
        assert task["completed"] is False
        assert find(added, "taskAdded").recipients == ("sid-a", "sid-b")
        assert find(added, "tasksUpdated").data["tasks"] == [task]

        edited = pair.edit_task("sid-b", str(ROOM), task["id"], "Read chapter 5")
        assert find(edited, "taskEdited").data == {"taskId": task["id"], "newText": "Read chapter 5"}

        toggled = pair.toggle_task("sid-a", str(ROOM), task["id"])
        assert find(toggled, "taskToggled").data["completed"] is True
        toggled = pair.toggle_task("sid-a", str(ROOM), task["id"], completed=True)
        assert find(toggled, "taskToggled").data["completed"] is True

        deleted = pair.delete_task("sid-b", str(ROOM), task["id"])
        assert find(deleted, "taskDeleted").data == task["id"]
        assert find(deleted, "tasksUpdated").data["tasks"] == []

    def test_tasks_keep_arrival_order(self, pair):
        for text in ["one", "two", "three"]:
            pair.add_task("sid-a", str(ROOM), text)
        assert [t.text for t in pair.get_room(ROOM).tasks] == ["one", "two", "three"]

    def test_unknown_task(self, pair):
        with pytest.raises(NotFound):
            pair.delete_task("sid-a", str(ROOM), "missing")
        with pytest.raises(NotFound):
            pair.toggle_task("sid-a", str(ROOM), "missing")

    @pytest.mark.parametrize("text", ["", "   ", None, 42])
    def test_empty_task(self, pair, text):
        with pytest.raises(InvalidArgument):
            pair.add_task("sid-a", str(ROOM), text)

    def test_non_member(self, pair):
        with pytest.raises(NotFound):
            pair.add_task("sid-x", str(ROOM), "sneaky")
        with pytest.raises(NotFound):
            pair.add_task("sid-a", "no-such-room", "lost")


class TestTimers:

    def test_countdown_to_completion(self, pair, scheduler, recorder):
        started = pair.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 5)
        state = find(started, "pomodoroStarted").data
        assert state["isRunning"] is True
        assert state["remainingSeconds"] == 5
        assert find(started, "pomodoroStarted").recipients == ("sid-a", "sid-b")

        asyncio.run(scheduler.tick(4))
        assert [m.data["remainingSeconds"] for m in recorder.events("pomodoroTick")] == [4, 3, 2, 1]

        asyncio.run(scheduler.tick())
        complete = recorder.events("pomodoroComplete")
        assert len(complete) == 1
        assert complete[0].data["isRunning"] is False
        assert complete[0].data["remainingSeconds"] == 0
        assert complete[0].data["completedSessionCount"] == 1
        assert len(recorder.events("pomodoroTick")) == 4

        asyncio.run(scheduler.tick(3))
        assert scheduler.active == []
        assert len(recorder.events("pomodoroComplete")) == 1

    def test_pause_and_resume(self, pair, scheduler, recorder):
        pair.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 10)
        asyncio.run(scheduler.tick(3))

        paused = find(pair.pause_timer("sid-b", str(ROOM), TimerKind.POMODORO), "pomodoroPaused").data
        assert paused["isRunning"] is False
        assert paused["remainingSeconds"] == 7
        assert scheduler.active == []

        resumed = find(pair.start_timer("sid-a", str(ROOM), TimerKind.POMODORO), "pomodoroStarted").data
        assert resumed["remainingSeconds"] == 7
        assert resumed["totalDurationSeconds"] == 10
        assert len(scheduler.active) == 1

    def test_restart_cancels_previous_interval(self, pair, scheduler, recorder):
        pair.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 10)
        first = scheduler.active[0]
        pair.start_timer("sid-b", str(ROOM), TimerKind.POMODORO, 10)

        assert first.cancelled
        assert len(scheduler.active) == 1
        assert asyncio.run(first.callback()) is False

        asyncio.run(scheduler.tick())
        assert [m.data["remainingSeconds"] for m in recorder.events("pomodoroTick")] == [9]

    def test_reset_keeps_session_count(self, pair, scheduler):
        pair.start_timer("sid-a", str(ROOM), TimerKind.BREAK, 1)
        asyncio.run(scheduler.tick())
        pair.start_timer("sid-a", str(ROOM), TimerKind.BREAK, 3)

        reset = find(pair.reset_timer("sid-a", str(ROOM), TimerKind.BREAK), "breakReset").data
        assert reset["remainingSeconds"] == 0
        assert reset["isRunning"] is False
        assert reset["completedSessionCount"] == 1
        assert scheduler.active == []

    def test_timers_are_independent(self, pair, scheduler, recorder):
        pair.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 3)
        pair.start_timer("sid-a", str(ROOM), TimerKind.BREAK, 2)
        asyncio.run(scheduler.tick(2))

        assert len(recorder.events("breakComplete")) == 1
        assert [m.data["remainingSeconds"] for m in recorder.events("pomodoroTick")] == [2, 1]
        assert pair.get_room(ROOM).pomodoro.state.is_running

    def test_change_duration_when_idle(self, pair):
        messages = pair.change_duration("sid-b", str(ROOM), TimerKind.POMODORO, 50)

        updated = find(messages, "durationUpdated")
        assert updated.recipients == ("sid-a", "sid-b")
        assert updated.data["duration"] == 50
        assert updated.data["totalDurationSeconds"] == 3000
        assert updated.data["remainingSeconds"] == 3000

    def test_change_break_duration_event(self, pair):
        messages = pair.change_duration("sid-a", str(ROOM), TimerKind.BREAK, 10)
        assert find(messages, "breakDurationUpdated").data["totalDurationSeconds"] == 600

    def test_change_duration_while_running(self, pair):
        pair.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 60)
        with pytest.raises(InvalidArgument):
            pair.change_duration("sid-b", str(ROOM), TimerKind.POMODORO, 10)

        timer = pair.get_room(ROOM).pomodoro
        assert timer.state.is_running
        assert timer.state.total_duration_seconds == 60

    @pytest.mark.parametrize("minutes", [0, -5, "ten", None, True])
    def test_change_duration_rejects_bad_values(self, pair, minutes):
        with pytest.raises(InvalidArgument):
            pair.change_duration("sid-a", str(ROOM), TimerKind.POMODORO, minutes)

    def test_start_uses_configured_duration(self, pair):
        pair.change_duration("sid-a", str(ROOM), TimerKind.POMODORO, 2)
        started = find(pair.start_timer("sid-a", str(ROOM), TimerKind.POMODORO), "pomodoroStarted").data
        assert started["remainingSeconds"] == 120

    def test_last_leave_stops_intervals(self, pair, scheduler, recorder):
        pair.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 30)
        pair.start_timer("sid-a", str(ROOM), TimerKind.BREAK, 30)
        handles = list(scheduler.active)

        pair.leave("sid-a", str(ROOM))
        assert len(scheduler.active) == 2
        pair.leave("sid-b", str(ROOM))

        assert scheduler.active == []
        assert all(handle.cancelled for handle in handles)
        assert all(asyncio.run(handle.callback()) is False for handle in handles)
        assert recorder.events() == []

    def test_delivery_failure_does_not_stop_countdown(self, scheduler, caplog):
        async def broken(messages):
            raise ConnectionError("socket gone")

        registry = RoomRegistry(scheduler=scheduler, deliver=broken)
        registry.join("sid-a", ALICE, "Alice", ROOM)
        registry.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 3)

        asyncio.run(scheduler.tick(2))

        assert registry.get_room(ROOM).pomodoro.state.remaining_seconds == 1
        assert len(scheduler.active) == 1
        assert "Failed to deliver timer events" in caplog.text

    def test_shutdown_cancels_everything(self, pair, scheduler):
        pair.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 30)
        pair.shutdown()

        assert scheduler.active == []
        assert pair.room_count == 0


class TestLateJoiner:

    def test_snapshot_matches_current_state(self, pair, scheduler):
        task_id = find(pair.add_task("sid-a", str(ROOM), "Flashcards"), "taskAdded").data["id"]
        pair.toggle_task("sid-b", str(ROOM), task_id)
        pair.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 10)
        asyncio.run(scheduler.tick(2))

        messages = pair.join("sid-c", CAROL, "Carol", ROOM)

        snapshot = find(messages, "roomJoined").data
        assert snapshot["members"] == ["Alice", "Bob", "Carol"]
        assert snapshot["tasks"] == [{"id": task_id, "text": "Flashcards", "completed": True}]
        assert "taskAdded" not in events(messages)
        assert snapshot["pomodoro"]["remainingSeconds"] == 8
        assert snapshot["pomodoro"]["isRunning"] is True
        assert find(messages, "pomodoroState").data["remainingSeconds"] == 8
        assert find(messages, "userJoined").recipients == ("sid-a", "sid-b")


class TestWhiteboard:

    def test_join_reports_viewers(self, pair):
        pair.join_whiteboard("sid-a", str(ROOM))
        messages = pair.join_whiteboard("sid-b", str(ROOM))

        assert find(messages, "whiteboard-connected").recipients == ("sid-b",)
        users = find(messages, "whiteboard-users")
        assert users.data == 2
        assert users.recipients == ("sid-a", "sid-b")

    def test_drawing_relayed_to_other_viewers_with_bound_identity(self, pair):
        pair.join_whiteboard("sid-a", str(ROOM))
        pair.join_whiteboard("sid-b", str(ROOM))

        messages = pair.relay_drawing("sid-a", str(ROOM), {
            "roomId": str(ROOM), "x": 1, "y": 2, "drawing": True, "userId": BOB,
        })

        drawing = find(messages, "drawing")
        assert drawing.recipients == ("sid-b",)
        assert drawing.data == {"x": 1, "y": 2, "drawing": True, "userId": ALICE}
        assert pair.get_room(ROOM).whiteboard_snapshot is None

    def test_canvas_state_retained_for_late_viewer(self, pair):
        pair.join_whiteboard("sid-a", str(ROOM))
        pair.store_canvas("sid-a", str(ROOM), "data:image/png;base64,AAAA")

        messages = pair.join_whiteboard("sid-b", str(ROOM))
        assert find(messages, "canvasState").data == "data:image/png;base64,AAAA"
        assert find(messages, "canvasState").recipients == ("sid-b",)

    def test_clear_canvas(self, pair):
        pair.join_whiteboard("sid-a", str(ROOM))
        pair.join_whiteboard("sid-b", str(ROOM))
        pair.store_canvas("sid-a", str(ROOM), "snapshot")

        messages = pair.clear_canvas("sid-b", str(ROOM))

        assert find(messages, "clearCanvas").recipients == ("sid-a",)
        assert pair.get_room(ROOM).whiteboard_snapshot is None

    def test_drawing_requires_viewer(self, pair):
        with pytest.raises(InvalidArgument):
            pair.relay_drawing("sid-a", str(ROOM), {"x": 1})

    def test_leave_whiteboard(self, pair):
        pair.join_whiteboard("sid-a", str(ROOM))
        pair.join_whiteboard("sid-b", str(ROOM))

        messages = pair.leave_whiteboard("sid-b", str(ROOM))
        assert find(messages, "whiteboard-users").data == 1
        assert pair.leave_whiteboard("sid-b", str(ROOM)) == []


class TestChat:

    def test_message_to_all_members(self, pair):
        messages = pair.send_message("sid-b", str(ROOM), "hello")

        message = find(messages, "newMessage")
        assert message.recipients == ("sid-a", "sid-b")
        assert message.data["username"] == "Bob"
        assert message.data["message"] == "hello"
        assert message.data["timestamp"]

    def test_empty_message(self, pair):
        with pytest.raises(InvalidArgument):
            pair.send_message("sid-a", str(ROOM), "   ")


def pending_tasks():
    return [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]


class TestAsyncioScheduler:

    def test_restart_runs_a_single_countdown(self, recorder):
        async def scenario():
            registry = RoomRegistry(AsyncioIntervalScheduler(), recorder.deliver, tick_seconds=0.01)
            registry.join("sid-a", ALICE, "Alice", ROOM)
            registry.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 5)
            registry.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 5)
            for _ in range(200):
                if recorder.events("pomodoroComplete"):
                    break
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
            return registry, pending_tasks()

        registry, leftover = asyncio.run(scenario())

        assert [m.data["remainingSeconds"] for m in recorder.events("pomodoroTick")] == [4, 3, 2, 1]
        assert len(recorder.events("pomodoroComplete")) == 1
        assert registry.get_room(ROOM).timer(TimerKind.POMODORO).state.completed_session_count == 1
        assert leftover == []

    def test_last_leave_stops_delivery(self, recorder):
        async def scenario():
            registry = RoomRegistry(AsyncioIntervalScheduler(), recorder.deliver, tick_seconds=0.01)
            registry.join("sid-a", ALICE, "Alice", ROOM)
            registry.start_timer("sid-a", str(ROOM), TimerKind.POMODORO, 60)
            for _ in range(200):
                if recorder.events("pomodoroTick"):
                    break
                await asyncio.sleep(0.01)

            registry.leave("sid-a", str(ROOM))
            delivered = len(recorder.messages)
            await asyncio.sleep(0.05)
            return delivered, pending_tasks()

        delivered, leftover = asyncio.run(scenario())

        assert delivered > 0
        assert len(recorder.messages) == delivered
        assert leftover == []
