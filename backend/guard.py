"""
Owner-Scoping Guard
===================

The single choke point through which every REST request proves and carries
an identity.

``get_request_context`` is the FastAPI dependency every owner-scoped route
depends on. It verifies the bearer token, re-resolves the identity in the
users collection and attaches it to a ``RequestContext``. Handlers then build
every filter with ``scoped_query`` / ``scoped_selector``; the store adapter
refuses anything else.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer

from auth import Identity, TokenClaim, token_codec
from database import get_identity_store
from errors import InvalidArgument, ProgrammerError, Unauthenticated
from store import OWNER_FIELD, IdentityStore, OwnerScope, utcnow

logger = logging.getLogger(__name__)

# lastLogin is written at most once per window per identity
LAST_LOGIN_REFRESH = timedelta(hours=6)

# OAuth2 scheme for token authentication; missing tokens are reported by the guard
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


@dataclass(frozen=True)
class RequestContext:
    identity: Identity

    @property
    def identity_id(self) -> str:
        return self.identity.id


def get_token_claim(token: Optional[str] = Depends(oauth2_scheme)) -> TokenClaim:
    """Dependency: a verified token claim, without touching the database"""
    if not token:
        raise Unauthenticated()
    return token_codec.verify(token)


def needs_last_login_refresh(last_login: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if last_login is None:
        return True
    if last_login.tzinfo is not None:
        last_login = last_login.astimezone(timezone.utc).replace(tzinfo=None)
    return (now or utcnow()) - last_login > LAST_LOGIN_REFRESH


async def get_request_context(
    claim: TokenClaim = Depends(get_token_claim),
    identities: IdentityStore = Depends(get_identity_store),
) -> RequestContext:
    """Dependency: the store-confirmed identity behind the bearer token"""
    identity = await identities.find_by_id(claim.identity_id)
    if identity is None:
        logger.warning("Token for unknown identity %s rejected", claim.identity_id)
        raise Unauthenticated("User not found")

    if needs_last_login_refresh(identity.last_login):
        await identities.touch_last_login(identity.id)
        logger.info("Updated lastLogin for user: %s", identity.email)

    return RequestContext(identity=identity)


def _owner_id(context: Optional[RequestContext]) -> str:
    if context is None or getattr(context, "identity", None) is None or not context.identity.id:
        raise ProgrammerError()
    return context.identity.id


def scoped_query(context: RequestContext, extra: Optional[dict] = None) -> OwnerScope:
    """Filter matching ``extra`` AND owned by the caller"""
    owner_id = _owner_id(context)
    extra = dict(extra or {})

    if OWNER_FIELD in extra:
        query = {"$and": [extra, {OWNER_FIELD: owner_id}]}
    else:
        query = {**extra, OWNER_FIELD: owner_id}
    return OwnerScope(owner_id=owner_id, filter=query)


def scoped_selector(context: RequestContext, record_id: str) -> OwnerScope:
    """Selector for one record by id, owned by the caller"""
    owner_id = _owner_id(context)
    if not isinstance(record_id, str) or not ObjectId.is_valid(record_id):
        raise InvalidArgument("Invalid ID format")
    return OwnerScope(owner_id=owner_id, filter={"_id": ObjectId(record_id), OWNER_FIELD: owner_id})
