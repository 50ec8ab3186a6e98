"""
TrackWise - Test Configuration and Fixtures

In-memory stand-ins for the Motor collections, a manual interval scheduler for
room timers, and helpers to create users and tokens. No MongoDB needed.
"""
import os
import copy
from datetime import datetime, timezone

os.environ['JWT_SECRET_KEY'] = 'test-jwt-secret-key-for-testing'
os.environ['ENVIRONMENT'] = 'test'
os.environ.pop('GROQ_API_KEY', None)

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import Identity, TokenCodec, get_password_hash
from rooms.timers import IntervalScheduler, TimerHandle
from store import IdentityStore, OwnedCollection, Stores


# ==================== FAKE MONGO ====================

def _matches_condition(value, condition) -> bool:
    if isinstance(condition, dict) and any(key.startswith("$") for key in condition):
        for op, expected in condition.items():
            if op == "$gte" and not (value is not None and value >= expected):
                return False
            if op == "$lte" and not (value is not None and value <= expected):
                return False
            if op == "$gt" and not (value is not None and value > expected):
                return False
            if op == "$lt" and not (value is not None and value < expected):
                return False
            if op == "$in" and value not in expected:
                return False
            if op == "$ne" and value == expected:
                return False
        return True
    return value == condition


def matches(document: dict, query: dict) -> bool:
    for key, condition in query.items():
        if key == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
        elif not _matches_condition(document.get(key), condition):
            return False
    return True


class InsertResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class UpdateResult:
    def __init__(self, matched_count):
        self.matched_count = matched_count
        self.modified_count = matched_count


class FakeCursor:
    def __init__(self, documents):
        self.documents = documents

    def sort(self, keys, direction=None):
        if isinstance(keys, str):
            keys = [(keys, direction or 1)]
        for field, order in reversed(list(keys)):
            self.documents.sort(key=lambda doc: (doc.get(field) is None, doc.get(field)), reverse=order < 0)
        return self

    async def to_list(self, length=None):
        return [copy.deepcopy(doc) for doc in self.documents[:length]]


class FakeCollection:
    """Just enough of AsyncIOMotorCollection for the store adapter"""

    def __init__(self, unique=()):
        self.documents = []
        self.unique = tuple(unique)

    def _query(self, query):
        return query

    def _select(self, query):
        query = self._query(query or {})
        return [doc for doc in self.documents if matches(doc, query)]

    def seed(self, document: dict) -> dict:
        document = dict(document)
        document.setdefault("_id", ObjectId())
        self.documents.append(document)
        return document

    def find(self, query=None):
        return FakeCursor(list(self._select(query)))

    async def find_one(self, query=None):
        found = self._select(query)
        return copy.deepcopy(found[0]) if found else None

    async def count_documents(self, query):
        return len(self._select(query))

    async def insert_one(self, document):
        for key in self.unique:
            fields = key if isinstance(key, tuple) else (key,)
            if any(all(existing.get(f) == document.get(f) for f in fields) for existing in self.documents):
                raise DuplicateKeyError(f"duplicate key: {key}")
        document.setdefault("_id", ObjectId())
        self.documents.append(copy.deepcopy(document))
        return InsertResult(document["_id"])

    async def update_one(self, query, update):
        found = self._select(query)
        if found:
            found[0].update(update.get("$set", {}))
        return UpdateResult(len(found[:1]))

    async def find_one_and_update(self, query, update, return_document=ReturnDocument.BEFORE):
        found = self._select(query)
        if not found:
            return None
        before = copy.deepcopy(found[0])
        found[0].update(update.get("$set", {}))
        return copy.deepcopy(found[0]) if return_document == ReturnDocument.AFTER else before

    async def find_one_and_delete(self, query):
        found = self._select(query)
        if not found:
            return None
        self.documents.remove(found[0])
        return copy.deepcopy(found[0])


def _drop_owner(query):
    if not isinstance(query, dict):
        return query
    cleaned = {}
    for key, value in query.items():
        if key == "user_id":
            continue
        if key == "$and":
            cleaned[key] = [_drop_owner(sub) for sub in value]
        else:
            cleaned[key] = value
    return cleaned


class LeakyCollection(FakeCollection):
    """A collection whose queries silently lose the owner constraint"""

    def _query(self, query):
        return _drop_owner(query)


# ==================== MANUAL SCHEDULER ====================

class ManualHandle(TimerHandle):
    def __init__(self, period, callback):
        self.period = period
        self.callback = callback
        self.cancelled = False
        self.finished = False

    def cancel(self):
        self.cancelled = True

    @property
    def active(self):
        return not self.cancelled and not self.finished


class ManualScheduler(IntervalScheduler):
    """Intervals that only fire when the test calls ``tick``"""

    def __init__(self):
        self.handles = []

    def every(self, period, callback):
        handle = ManualHandle(period, callback)
        self.handles.append(handle)
        return handle

    @property
    def active(self):
        return [handle for handle in self.handles if handle.active]

    async def tick(self, times=1):
        for _ in range(times):
            for handle in self.active:
                if not await handle.callback():
                    handle.finished = True


class Recorder:
    """Collects every message the registry delivers on its own (timer ticks)"""

    def __init__(self):
        self.messages = []

    async def deliver(self, messages):
        self.messages.extend(messages)

    def events(self, name=None):
        return [m for m in self.messages if name is None or m.event == name]

    def clear(self):
        self.messages.clear()


# ==================== FIXTURES ====================

@pytest.fixture
def codec():
    return TokenCodec(secret_key="unit-test-secret")


@pytest.fixture
def users_collection():
    return FakeCollection(unique=("email",))


@pytest.fixture
def identities(users_collection):
    return IdentityStore(users_collection)


@pytest.fixture
def collections():
    return {
        "tasks": FakeCollection(),
        "notes": FakeCollection(),
        "reminders": FakeCollection(),
        "progress": FakeCollection(unique=[("user_id", "date")]),
        "chat_messages": FakeCollection(),
    }


@pytest.fixture
def stores(collections):
    return Stores(
        tasks=OwnedCollection(collections["tasks"], "task"),
        notes=OwnedCollection(collections["notes"], "note"),
        reminders=OwnedCollection(collections["reminders"], "reminder"),
        progress=OwnedCollection(collections["progress"], "progress"),
        chat_messages=OwnedCollection(collections["chat_messages"], "chat message"),
    )


@pytest.fixture
def make_user(users_collection):
    """Seed a user document and return its Identity"""

    def _make(name="Alice", email=None, password="secret123", last_login=None):
        doc = users_collection.seed({
            "name": name,
            "email": email or f"{name.lower()}@example.com",
            "password": get_password_hash(password),
            "auth_provider": "local",
            "created_at": datetime.now(timezone.utc).replace(tzinfo=None),
            "last_login": last_login or datetime.now(timezone.utc).replace(tzinfo=None),
        })
        return Identity.from_document(doc)

    return _make


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def recorder():
    return Recorder()
