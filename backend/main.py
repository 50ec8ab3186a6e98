"""
TrackWise - FastAPI Backend Server
==================================

A multi-user study tracker that combines:
- Owner-scoped tasks, notes, schedule reminders and progress entries
- An AI study assistant (chatbot)
- Real-time collaborative study rooms (shared Pomodoro and break timers,
  shared to-do list, whiteboard and room chat)

Every data access is scoped to the authenticated user: REST routes go through
the owner-scoping guard (``guard.py``) and the realtime transport binds each
socket to one identity at connect time (``rooms/gateway.py``).

Tech Stack:
- FastAPI: Modern Python web framework
- python-socketio: Realtime rooms, mounted beside the FastAPI app
- MongoDB (motor): Document database for persistent storage
- Groq API: LLM for the study assistant

Project: TrackWise
"""

from fastapi import FastAPI, Depends, Query, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import List, Optional
import os
import logging
import secrets
from datetime import datetime, timedelta
from dotenv import load_dotenv
import socketio

# Import database initialization and repository factories
from database import (
    init_db,
    close_db,
    get_identity_store,
    get_stores,
)

# Import authentication utilities
from auth import (
    MIN_PASSWORD_LENGTH,
    SignupRequest,
    LoginRequest,
    TokenClaim,
    get_password_hash,
    verify_password,
    token_codec,
)

from guard import RequestContext, get_request_context, get_token_claim, scoped_query, scoped_selector
from errors import Conflict, InvalidArgument, NotFound, register_exception_handlers
from store import IdentityStore, Stores, to_naive_utc, utcnow
from chatbot import answer
from rooms import (
    AsyncioIntervalScheduler,
    RealtimeGateway,
    RoomListing,
    RoomRegistry,
    SocketBroadcaster,
)

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI application
app = FastAPI(
    title="TrackWise API",
    description="Study tracker with owner-scoped data and collaborative study rooms",
    version="1.0.0"
)

register_exception_handlers(app)

# CORS Configuration
# ==================
# Enable Cross-Origin Resource Sharing for frontend communication
# Supports both local development and production deployments
# For production, set FRONTEND_URL environment variable to your deployed frontend
allowed_origins = [
    "http://localhost:3000",
    "http://localhost:5173",
]

# Add production frontend URL if specified
frontend_url = os.getenv("FRONTEND_URL")
if frontend_url:
    allowed_origins.append(frontend_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods (GET, POST, PUT, DELETE, etc.)
    allow_headers=["*"],  # Allow all headers
)

# Realtime Rooms
# ==============
# Socket.IO server sharing the ASGI process with FastAPI. Serve ``socket_app``
# (not ``app``) so that both transports are reachable.
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allowed_origins)
broadcaster = SocketBroadcaster(sio)
room_registry = RoomRegistry(AsyncioIntervalScheduler(), broadcaster.deliver)


async def resolve_socket_identity(identity_id: str):
    return await get_identity_store().find_by_id(identity_id)


gateway = RealtimeGateway(sio, room_registry, broadcaster, token_codec, resolve_socket_identity)
gateway.register()

socket_app = socketio.ASGIApp(sio, other_asgi_app=app)


def get_room_registry() -> RoomRegistry:
    return room_registry


# Application Lifecycle
# =====================
@app.on_event("startup")
async def startup_event():
    """
    Initialize application resources on startup.
    - Creates database indexes for owner-scoped queries
    """
    init_db()
    logger.info("Application started, database initialized")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop every room timer and close the database clients"""
    room_registry.shutdown()
    await close_db()


# ==================== PYDANTIC MODELS ====================

# Task Models
# ===========
class TaskCreate(BaseModel):
    title: Optional[str] = None
    dueDate: Optional[str] = None
    status: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    dueDate: Optional[str] = None
    status: Optional[str] = None


# Note Models
# ===========
class NoteCreate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


class NoteUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


# Schedule Models
# ===============
class ReminderCreate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None


class ReminderUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None


# Progress Models
# ===============
class SubjectEntry(BaseModel):
    name: str
    value: float = 0


class ProgressUpsert(BaseModel):
    date: Optional[str] = None
    completedTasks: Optional[int] = None
    studyHours: Optional[float] = None
    subjects: Optional[List[SubjectEntry]] = None


# Room Models
# ===========
class RoomCreateRequest(BaseModel):
    creator: Optional[str] = None
    topic: Optional[str] = None
    participantsLimit: Optional[int] = None


class RoomJoinRequest(BaseModel):
    roomKey: Optional[str] = None
    username: Optional[str] = None


# Chatbot Models
# ==============
class ChatQuery(BaseModel):
    message: Optional[str] = None


# ==================== HELPER FUNCTIONS ====================

TASK_STATUSES = ("not-started", "in-progress", "completed")
DEFAULT_TASK_STATUS = "not-started"

DEFAULT_ROOM_LIMIT = 10
MAX_ROOM_LIMIT = 10


def iso(value) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def parse_date(value, field: str) -> datetime:
    """Parse an ISO date or datetime from a request body into naive UTC"""
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{field} is required")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidArgument(f"{field} must be an ISO date")
    return to_naive_utc(parsed)


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def required_text(value, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(message)
    return value.strip()


def check_task_status(value: str) -> str:
    if value not in TASK_STATUSES:
        raise InvalidArgument(f"Status must be one of: {', '.join(TASK_STATUSES)}")
    return value


def task_helper(task) -> dict:
    """Convert MongoDB task document to API response format"""
    return {
        "id": str(task["_id"]),
        "title": task["title"],
        "dueDate": iso(task.get("due_date")),
        "status": task.get("status", DEFAULT_TASK_STATUS),
        "createdAt": iso(task.get("created_at")),
        "updatedAt": iso(task.get("updated_at")),
    }


def note_helper(note) -> dict:
    return {
        "id": str(note["_id"]),
        "title": note["title"],
        "content": note.get("content", ""),
        "createdAt": iso(note.get("created_at")),
        "updatedAt": iso(note.get("updated_at", note.get("created_at"))),
    }


def reminder_helper(reminder) -> dict:
    return {
        "id": str(reminder["_id"]),
        "title": reminder["title"],
        "description": reminder.get("description", ""),
        "date": iso(reminder.get("date")),
        "createdAt": iso(reminder.get("created_at")),
        "updatedAt": iso(reminder.get("updated_at")),
    }


def progress_helper(entry) -> dict:
    return {
        "id": str(entry["_id"]),
        "date": iso(entry.get("date")),
        "completedTasks": entry.get("completed_tasks", 0),
        "studyHours": entry.get("study_hours", 0),
        "subjects": entry.get("subjects", []),
        "createdAt": iso(entry.get("created_at")),
        "updatedAt": iso(entry.get("updated_at")),
    }


def chat_message_helper(message) -> dict:
    return {
        "id": str(message["_id"]),
        "role": message["role"],
        "message": message["message"],
        "timestamp": iso(message.get("created_at")),
    }


def default_room(room_key: str) -> dict:
    """Description served for a key with no live listing"""
    return {
        "roomKey": room_key,
        "topic": "Study Room",
        "creator": "Host",
        "participantsLimit": DEFAULT_ROOM_LIMIT,
    }


def progress_window(days: int, now: Optional[datetime] = None):
    end = now or utcnow()
    start = start_of_day(end - timedelta(days=days))
    return start, end


def compute_streak(entries: List[dict], start: datetime, today: datetime) -> int:
    """Consecutive days with completed tasks, counted back from today; today may still be empty"""
    active_days = {start_of_day(entry["date"]) for entry in entries if entry.get("completed_tasks", 0) > 0}
    today = start_of_day(today)

    streak = 0
    day = today
    while day >= start:
        if day in active_days:
            streak += 1
        elif day < today:
            break
        day -= timedelta(days=1)
    return streak


def day_label(day: datetime) -> str:
    return f"{day:%b} {day.day}"


# ==================== API ENDPOINTS ====================

@app.get("/")
def read_root():
    """Health check endpoint"""
    return {"message": "TrackWise API is running", "rooms": room_registry.room_count}


# ==================== AUTHENTICATION ENDPOINTS ====================

@app.post("/auth/signup", status_code=status.HTTP_201_CREATED)
async def signup(user_data: SignupRequest, identities: IdentityStore = Depends(get_identity_store)):
    """Register a new user with name, email and password"""
    if not user_data.name or not user_data.email or not user_data.password:
        raise InvalidArgument("Please provide name, email, and password.")
    if len(user_data.password) < MIN_PASSWORD_LENGTH:
        raise InvalidArgument(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

    email = user_data.email.strip().lower()
    if await identities.find_by_email(email):
        raise InvalidArgument("Email already registered.")

    identity = await identities.create(user_data.name.strip(), email, get_password_hash(user_data.password))
    logger.info("New user registered: %s", identity.email)

    return {"token": token_codec.issue(identity), "user": identity.public()}


@app.post("/auth/login")
async def login(user_data: LoginRequest, identities: IdentityStore = Depends(get_identity_store)):
    """Login with email and password"""
    if not user_data.email or not user_data.password:
        raise InvalidArgument("Please provide both email and password.")

    identity = await identities.find_by_email(user_data.email.strip().lower())

    # Unknown email and wrong password get the same answer
    if identity is None or not verify_password(user_data.password, identity.password_hash):
        raise InvalidArgument("Invalid credentials.")

    await identities.touch_last_login(identity.id)
    return {"token": token_codec.issue(identity), "user": identity.public()}


@app.get("/auth/me")
async def get_me(
    claim: TokenClaim = Depends(get_token_claim),
    identities: IdentityStore = Depends(get_identity_store),
):
    """Get current user information"""
    identity = await identities.find_by_id(claim.identity_id)
    if identity is None:
        raise NotFound("User not found.")
    return {"user": identity.public(), "valid": True}


# ==================== TASK ENDPOINTS ====================

@app.get("/tasks")
async def get_tasks(context: RequestContext = Depends(get_request_context), stores: Stores = Depends(get_stores)):
    """Get all tasks for the current user, newest first"""
    tasks = await stores.tasks.find_many(scoped_query(context), sort=[("created_at", -1)])
    logger.debug("Found %d tasks for user %s", len(tasks), context.identity_id)
    return [task_helper(task) for task in tasks]


@app.post("/tasks", status_code=status.HTTP_201_CREATED)
async def create_task(task: TaskCreate, context: RequestContext = Depends(get_request_context),
                      stores: Stores = Depends(get_stores)):
    """Create a new task"""
    if not task.title or not task.title.strip() or not task.dueDate:
        raise InvalidArgument("Title and due date are required")

    created = await stores.tasks.insert(scoped_query(context), {
        "title": task.title.strip(),
        "due_date": parse_date(task.dueDate, "dueDate"),
        "status": check_task_status(task.status or DEFAULT_TASK_STATUS),
    })
    return task_helper(created)


@app.get("/tasks/{task_id}")
async def get_task(task_id: str, context: RequestContext = Depends(get_request_context),
                   stores: Stores = Depends(get_stores)):
    """Get a specific task"""
    task = await stores.tasks.find_one(scoped_selector(context, task_id))
    if not task:
        raise NotFound("Task not found")
    return task_helper(task)


@app.put("/tasks/{task_id}")
async def update_task(task_id: str, task_update: TaskUpdate, context: RequestContext = Depends(get_request_context),
                      stores: Stores = Depends(get_stores)):
    """Update a task"""
    selector = scoped_selector(context, task_id)

    update_data = {}
    if task_update.title is not None:
        update_data["title"] = required_text(task_update.title, "Title cannot be empty")
    if task_update.dueDate is not None:
        update_data["due_date"] = parse_date(task_update.dueDate, "dueDate")
    if task_update.status is not None:
        update_data["status"] = check_task_status(task_update.status)

    task = await stores.tasks.update_one(selector, update_data)
    if not task:
        raise NotFound("Task not found")
    return task_helper(task)


@app.delete("/tasks/{task_id}")
async def delete_task(task_id: str, context: RequestContext = Depends(get_request_context),
                      stores: Stores = Depends(get_stores)):
    """Delete a task"""
    task = await stores.tasks.delete_one(scoped_selector(context, task_id))
    if not task:
        raise NotFound("Task not found")
    return {"message": "Task deleted successfully", "task": {"id": str(task["_id"]), "title": task["title"]}}


# ==================== NOTES ENDPOINTS ====================

@app.get("/notes")
async def get_notes(context: RequestContext = Depends(get_request_context), stores: Stores = Depends(get_stores)):
    """Get all notes for the current user, most recently edited first"""
    notes = await stores.notes.find_many(scoped_query(context), sort=[("updated_at", -1)])
    return [note_helper(note) for note in notes]


@app.post("/notes", status_code=status.HTTP_201_CREATED)
async def create_note(note: NoteCreate, context: RequestContext = Depends(get_request_context),
                      stores: Stores = Depends(get_stores)):
    """Create a new note"""
    created = await stores.notes.insert(scoped_query(context), {
        "title": required_text(note.title, "Title is required"),
        "content": note.content or "",
    })
    return note_helper(created)


@app.get("/notes/{note_id}")
async def get_note(note_id: str, context: RequestContext = Depends(get_request_context),
                   stores: Stores = Depends(get_stores)):
    note = await stores.notes.find_one(scoped_selector(context, note_id))
    if not note:
        raise NotFound("Note not found")
    return note_helper(note)


@app.put("/notes/{note_id}")
async def update_note(note_id: str, note_update: NoteUpdate, context: RequestContext = Depends(get_request_context),
                      stores: Stores = Depends(get_stores)):
    """Update a note"""
    selector = scoped_selector(context, note_id)

    update_data = {}
    if note_update.title is not None:
        update_data["title"] = required_text(note_update.title, "Title cannot be empty")
    if note_update.content is not None:
        update_data["content"] = note_update.content

    note = await stores.notes.update_one(selector, update_data)
    if not note:
        raise NotFound("Note not found")
    return note_helper(note)


@app.delete("/notes/{note_id}")
async def delete_note(note_id: str, context: RequestContext = Depends(get_request_context),
                      stores: Stores = Depends(get_stores)):
    """Delete a note"""
    note = await stores.notes.delete_one(scoped_selector(context, note_id))
    if not note:
        raise NotFound("Note not found")
    return {"message": "Note deleted successfully", "note": {"id": str(note["_id"]), "title": note["title"]}}


# ==================== SCHEDULE ENDPOINTS ====================

@app.get("/schedule")
async def get_schedule(context: RequestContext = Depends(get_request_context), stores: Stores = Depends(get_stores)):
    """Get all reminders for the current user, soonest first"""
    reminders = await stores.reminders.find_many(scoped_query(context), sort=[("date", 1)])
    return [reminder_helper(reminder) for reminder in reminders]


@app.post("/schedule", status_code=status.HTTP_201_CREATED)
async def create_reminder(reminder: ReminderCreate, context: RequestContext = Depends(get_request_context),
                          stores: Stores = Depends(get_stores)):
    """Create a new reminder"""
    if not reminder.title or not reminder.title.strip() or not reminder.date:
        raise InvalidArgument("Title and date are required")

    created = await stores.reminders.insert(scoped_query(context), {
        "title": reminder.title.strip(),
        "description": reminder.description or "",
        "date": parse_date(reminder.date, "date"),
    })
    return reminder_helper(created)


@app.get("/schedule/{reminder_id}")
async def get_reminder(reminder_id: str, context: RequestContext = Depends(get_request_context),
                       stores: Stores = Depends(get_stores)):
    reminder = await stores.reminders.find_one(scoped_selector(context, reminder_id))
    if not reminder:
        raise NotFound("Reminder not found")
    return reminder_helper(reminder)


@app.put("/schedule/{reminder_id}")
async def update_reminder(reminder_id: str, reminder_update: ReminderUpdate,
                          context: RequestContext = Depends(get_request_context),
                          stores: Stores = Depends(get_stores)):
    """Update a reminder"""
    selector = scoped_selector(context, reminder_id)

    update_data = {}
    if reminder_update.title is not None:
        update_data["title"] = required_text(reminder_update.title, "Title cannot be empty")
    if reminder_update.description is not None:
        update_data["description"] = reminder_update.description
    if reminder_update.date is not None:
        update_data["date"] = parse_date(reminder_update.date, "date")

    reminder = await stores.reminders.update_one(selector, update_data)
    if not reminder:
        raise NotFound("Reminder not found")
    return reminder_helper(reminder)


@app.delete("/schedule/{reminder_id}")
async def delete_reminder(reminder_id: str, context: RequestContext = Depends(get_request_context),
                          stores: Stores = Depends(get_stores)):
    """Delete a reminder"""
    reminder = await stores.reminders.delete_one(scoped_selector(context, reminder_id))
    if not reminder:
        raise NotFound("Reminder not found")
    return {
        "message": "Reminder deleted successfully",
        "reminder": {"id": str(reminder["_id"]), "title": reminder["title"]},
    }


# ==================== PROGRESS ENDPOINTS ====================

@app.get("/progress")
async def get_progress(context: RequestContext = Depends(get_request_context), stores: Stores = Depends(get_stores)):
    """Get all progress entries for the current user, newest first"""
    entries = await stores.progress.find_many(scoped_query(context), sort=[("date", -1)])
    return [progress_helper(entry) for entry in entries]


@app.post("/progress", status_code=status.HTTP_201_CREATED)
async def upsert_progress(entry: ProgressUpsert, context: RequestContext = Depends(get_request_context),
                          stores: Stores = Depends(get_stores)):
    """Create or update the progress entry for one day"""
    day = start_of_day(parse_date(entry.date, "date"))
    if entry.completedTasks is not None and entry.completedTasks < 0:
        raise InvalidArgument("completedTasks cannot be negative")
    if entry.studyHours is not None and entry.studyHours < 0:
        raise InvalidArgument("studyHours cannot be negative")

    fields = {}
    if entry.completedTasks is not None:
        fields["completed_tasks"] = entry.completedTasks
    if entry.studyHours is not None:
        fields["study_hours"] = entry.studyHours
    if entry.subjects:
        fields["subjects"] = [subject.model_dump() for subject in entry.subjects]

    existing = await stores.progress.find_one(scoped_query(context, {"date": day}))
    if existing is None:
        try:
            created = await stores.progress.insert(scoped_query(context), {
                "date": day,
                "completed_tasks": 0,
                "study_hours": 0,
                "subjects": [],
                **fields,
            })
            return progress_helper(created)
        except Conflict:
            # A concurrent request created this day's entry first
            logger.info("Progress entry for %s already created, updating instead", day.date())

    updated = await stores.progress.update_one(scoped_query(context, {"date": day}), fields)
    if not updated:
        raise NotFound("Progress entry not found")
    return progress_helper(updated)


@app.get("/progress/summary")
async def get_progress_summary(days: int = Query(30, ge=1, le=365),
                               context: RequestContext = Depends(get_request_context),
                               stores: Stores = Depends(get_stores)):
    """Summary statistics (total tasks, study hours, streak) over the last ``days`` days"""
    start, end = progress_window(days)
    entries = await stores.progress.find_many(
        scoped_query(context, {"date": {"$gte": start, "$lte": end}}),
        sort=[("date", 1)],
    )

    total_tasks = sum(entry.get("completed_tasks", 0) for entry in entries)
    total_hours = sum(entry.get("study_hours", 0) for entry in entries)

    tasks_by_status = {
        "completed": await stores.tasks.count(scoped_query(context, {"status": "completed"})),
        "inProgress": await stores.tasks.count(scoped_query(context, {"status": "in-progress"})),
        "notStarted": await stores.tasks.count(scoped_query(context, {"status": "not-started"})),
    }

    return {
        "totalTasks": total_tasks,
        "totalHours": total_hours,
        "averageHoursPerDay": total_hours / days,
        "streak": compute_streak(entries, start, end),
        "tasksByStatus": tasks_by_status,
        "daysTracked": len(entries),
    }


@app.get("/progress/daily")
async def get_daily_progress(days: int = Query(30, ge=1, le=365),
                             context: RequestContext = Depends(get_request_context),
                             stores: Stores = Depends(get_stores)):
    """One point per day over the last ``days`` days, zero-filled"""
    start, end = progress_window(days)
    entries = await stores.progress.find_many(
        scoped_query(context, {"date": {"$gte": start, "$lte": end}}),
        sort=[("date", 1)],
    )
    by_day = {start_of_day(entry["date"]): entry for entry in entries}

    daily = []
    day = start
    while day <= end:
        entry = by_day.get(day, {})
        daily.append({
            "date": day_label(day),
            "completedTasks": entry.get("completed_tasks", 0),
            "studyHours": entry.get("study_hours", 0),
        })
        day += timedelta(days=1)
    return daily


# ==================== ROOM ENDPOINTS ====================

@app.post("/rooms/create", status_code=status.HTTP_201_CREATED)
async def create_room(request: RoomCreateRequest, context: RequestContext = Depends(get_request_context),
                      registry: RoomRegistry = Depends(get_room_registry)):
    """Announce a new shared room; members then join it over Socket.IO"""
    limit = DEFAULT_ROOM_LIMIT if request.participantsLimit is None else request.participantsLimit
    if limit < 1 or limit > MAX_ROOM_LIMIT:
        raise InvalidArgument(f"Participant limit must be between 1 and {MAX_ROOM_LIMIT}")

    listing = RoomListing(
        room_key=secrets.token_hex(4),
        topic=request.topic,
        creator=request.creator or context.identity.name,
        participants_limit=limit,
        created_by=context.identity_id,
    )
    registry.announce(listing)
    logger.info("Room %s announced by user %s", listing.room_key, context.identity_id)

    return {"success": True, "room": listing.to_payload()}


@app.post("/rooms/join")
async def join_room(request: RoomJoinRequest, registry: RoomRegistry = Depends(get_room_registry)):
    """Describe the room a user is about to join"""
    if not request.roomKey or not request.username:
        raise InvalidArgument("Room key and username are required")
    return {"success": True, "room": registry.describe(request.roomKey) or default_room(request.roomKey)}


@app.get("/rooms/{room_key}")
async def get_room(room_key: str, registry: RoomRegistry = Depends(get_room_registry)):
    return {"success": True, "room": registry.describe(room_key) or default_room(room_key)}


# ==================== CHATBOT ENDPOINTS ====================

@app.post("/chatbot/query")
async def chatbot_query(request: ChatQuery, context: RequestContext = Depends(get_request_context),
                        stores: Stores = Depends(get_stores)):
    """Ask the study assistant; both sides of the exchange are kept in the user's history"""
    message = required_text(request.message, "Query message is required")
    await stores.chat_messages.insert(scoped_query(context), {"role": "user", "message": message})

    response = await answer(message)

    await stores.chat_messages.insert(scoped_query(context), {"role": "bot", "message": response})
    return {"response": response}


@app.get("/chatbot/history")
async def chatbot_history(context: RequestContext = Depends(get_request_context),
                          stores: Stores = Depends(get_stores)):
    messages = await stores.chat_messages.find_many(scoped_query(context), sort=[("created_at", 1), ("_id", 1)])
    return {"history": [chat_message_helper(message) for message in messages]}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(socket_app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
