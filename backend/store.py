"""
Resource Store Adapter
======================

Thin repositories over the MongoDB collections.

``OwnedCollection`` is the only way entity handlers reach tasks, notes,
reminders, progress entries and chat messages. It only accepts an
``OwnerScope`` (built by the owner-scoping guard), forces the owner field on
every insert, refuses owner/id fields in request content, and re-checks the
owner of every document it hands back.

``IdentityStore`` wraps the users collection.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import Identity
from errors import Conflict, InvalidArgument, IsolationBreach, ProgrammerError, ServerError

logger = logging.getLogger(__name__)

OWNER_FIELD = "user_id"

# Never taken from request content
PROTECTED_FIELDS = {"_id", "id", OWNER_FIELD, "userId", "owner_id", "ownerId", "created_at", "createdAt"}


def utcnow() -> datetime:
    """Current UTC time, naive, as MongoDB hands datetimes back"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass(frozen=True)
class OwnerScope:
    """A filter that is guaranteed to contain the owner constraint"""

    owner_id: str
    filter: dict


def assert_owned(owner_id: str, documents: Iterable[Optional[dict]], kind: str = "record"):
    """Raise IsolationBreach if any document belongs to someone other than ``owner_id``"""
    foreign = [
        doc for doc in documents
        if doc is not None and str(doc.get(OWNER_FIELD)) != owner_id
    ]
    if foreign:
        logger.critical(
            "SECURITY BREACH: %d %s document(s) not owned by %s: %s",
            len(foreign), kind, owner_id, [str(doc.get("_id")) for doc in foreign],
        )
        raise IsolationBreach()


def clean_fields(fields: dict) -> dict:
    return {key: value for key, value in fields.items() if key not in PROTECTED_FIELDS}


class OwnedCollection:
    """Owner-scoped repository for one entity kind"""

    def __init__(self, collection, kind: str):
        self.collection = collection
        self.kind = kind

    def _require_scope(self, scope) -> OwnerScope:
        if not isinstance(scope, OwnerScope) or not scope.owner_id:
            raise ProgrammerError(f"{self.kind} store called without an owner scope")
        return scope

    def _store_failure(self, operation: str, error: Exception) -> ServerError:
        logger.error("%s %s failed: %s", self.kind, operation, error)
        return ServerError(f"{self.kind} {operation} failed: {error}")

    async def find_many(self, scope: OwnerScope, sort: Optional[Sequence[Tuple[str, int]]] = None) -> List[dict]:
        scope = self._require_scope(scope)
        try:
            cursor = self.collection.find(scope.filter)
            if sort:
                cursor = cursor.sort(list(sort))
            documents = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise self._store_failure("find", e)

        assert_owned(scope.owner_id, documents, self.kind)
        return documents

    async def find_one(self, scope: OwnerScope) -> Optional[dict]:
        scope = self._require_scope(scope)
        try:
            document = await self.collection.find_one(scope.filter)
        except PyMongoError as e:
            raise self._store_failure("find", e)

        assert_owned(scope.owner_id, [document], self.kind)
        return document

    async def count(self, scope: OwnerScope) -> int:
        scope = self._require_scope(scope)
        try:
            return await self.collection.count_documents(scope.filter)
        except PyMongoError as e:
            raise self._store_failure("count", e)

    async def insert(self, scope: OwnerScope, fields: dict) -> dict:
        """Insert a new record owned by the scope's owner"""
        scope = self._require_scope(scope)
        now = utcnow()
        document = clean_fields(fields)
        document[OWNER_FIELD] = scope.owner_id
        document["created_at"] = now
        document["updated_at"] = now

        try:
            result = await self.collection.insert_one(document)
        except DuplicateKeyError:
            raise Conflict(f"{self.kind} already exists")
        except PyMongoError as e:
            raise self._store_failure("insert", e)
        document["_id"] = result.inserted_id
        return document

    async def update_one(self, scope: OwnerScope, patch: dict) -> Optional[dict]:
        """Apply ``patch`` to the scoped record; None when nothing matched"""
        scope = self._require_scope(scope)
        changes = clean_fields(patch)
        changes["updated_at"] = utcnow()

        try:
            document = await self.collection.find_one_and_update(
                scope.filter,
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise self._store_failure("update", e)

        assert_owned(scope.owner_id, [document], self.kind)
        return document

    async def delete_one(self, scope: OwnerScope) -> Optional[dict]:
        scope = self._require_scope(scope)
        try:
            document = await self.collection.find_one_and_delete(scope.filter)
        except PyMongoError as e:
            raise self._store_failure("delete", e)

        assert_owned(scope.owner_id, [document], self.kind)
        return document


class IdentityStore:
    """Repository over the users collection"""

    def __init__(self, collection):
        self.collection = collection

    async def find_by_id(self, identity_id: str) -> Optional[Identity]:
        if not identity_id or not ObjectId.is_valid(identity_id):
            return None
        try:
            doc = await self.collection.find_one({"_id": ObjectId(identity_id)})
        except PyMongoError as e:
            logger.error("Identity lookup failed: %s", e)
            raise ServerError("Database error during authentication")
        return Identity.from_document(doc) if doc else None

    async def find_by_email(self, email: str) -> Optional[Identity]:
        try:
            doc = await self.collection.find_one({"email": email})
        except PyMongoError as e:
            logger.error("Identity lookup failed: %s", e)
            raise ServerError("Database error during authentication")
        return Identity.from_document(doc) if doc else None

    async def create(self, name: str, email: str, password_hash: str) -> Identity:
        now = utcnow()
        doc = {
            "name": name,
            "email": email,
            "password": password_hash,
            "auth_provider": "local",
            "created_at": now,
            "last_login": now,
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise InvalidArgument("Email already registered.")
        except PyMongoError as e:
            logger.error("Identity insert failed: %s", e)
            raise ServerError("Server error during registration.")
        doc["_id"] = result.inserted_id
        return Identity.from_document(doc)

    async def touch_last_login(self, identity_id: str, when: Optional[datetime] = None):
        try:
            await self.collection.update_one(
                {"_id": ObjectId(identity_id)},
                {"$set": {"last_login": when or utcnow()}},
            )
        except PyMongoError as e:
            # A stale last_login is harmless; the request itself still succeeds
            logger.warning("Could not refresh last_login for %s: %s", identity_id, e)


@dataclass
class Stores:
    tasks: OwnedCollection
    notes: OwnedCollection
    reminders: OwnedCollection
    progress: OwnedCollection
    chat_messages: OwnedCollection
