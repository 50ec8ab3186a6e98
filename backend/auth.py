"""
Authentication Module
=====================

Handles password hashing and the identity token codec.

A token binds one identity (id, display name, email) to a fixed 30-day
lifetime. Verification is a pure function of the token and the clock: it
never touches the database, so the realtime gateway can call it on every
connection. The REST guard (see ``guard.py``) additionally re-resolves the
identity against the users collection.

Tech Stack:
- python-jose: JWT token handling
- passlib: Password hashing with bcrypt
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
import os
from dotenv import load_dotenv

from errors import TokenExpired, TokenMalformed

load_dotenv()

# JWT Configuration
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-this-in-production")
ALGORITHM = "HS256"
TOKEN_LIFETIME = timedelta(days=30)

MIN_PASSWORD_LENGTH = 6

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


# Pydantic Models
class SignupRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


@dataclass
class Identity:
    """A stored user account"""

    id: str
    name: str
    email: str
    password_hash: str = ""
    last_login: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: dict) -> "Identity":
        return cls(
            id=str(doc["_id"]),
            name=doc.get("name", ""),
            email=doc.get("email", ""),
            password_hash=doc.get("password", ""),
            last_login=doc.get("last_login"),
        )

    def public(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email}


@dataclass(frozen=True)
class TokenClaim:
    identity_id: str
    display_name: str
    email: str
    issued_at: datetime
    expires_at: datetime


# Password Hashing Functions
def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    if not plain_password or not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    """Hash a password for storing"""
    return pwd_context.hash(password)


def _timestamp(value) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TokenCodec:
    """Issues and verifies signed identity tokens"""

    def __init__(self, secret_key: str = SECRET_KEY, algorithm: str = ALGORITHM,
                 lifetime: timedelta = TOKEN_LIFETIME):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.lifetime = lifetime

    def issue(self, identity: Identity, now: Optional[datetime] = None) -> str:
        """Create a token for ``identity`` that expires ``lifetime`` after ``now``"""
        issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        claims = {
            "sub": identity.email,
            "user_id": identity.id,
            "name": identity.name,
            "email": identity.email,
            "iat": issued_at,
            "exp": issued_at + self.lifetime,
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: str, now: Optional[datetime] = None) -> TokenClaim:
        """
        Decode and validate a token.

        Raises:
            TokenMalformed: structure, signature or required claims are invalid
            TokenExpired: the token's expiry is not after ``now``
        """
        if not token or not isinstance(token, str):
            raise TokenMalformed()

        try:
            # Expiry is checked below against the caller's clock
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            raise TokenMalformed()

        identity_id = payload.get("user_id")
        issued_at = _timestamp(payload.get("iat"))
        expires_at = _timestamp(payload.get("exp"))
        if not identity_id or not isinstance(identity_id, str) or issued_at is None or expires_at is None:
            raise TokenMalformed()

        current = now or datetime.now(timezone.utc)
        if expires_at <= current:
            raise TokenExpired()

        return TokenClaim(
            identity_id=identity_id,
            display_name=payload.get("name") or "",
            email=payload.get("email") or payload.get("sub") or "",
            issued_at=issued_at,
            expires_at=expires_at,
        )


token_codec = TokenCodec()
