"""
Session Management Module
=========================

Holds the per-browser session that backs the login flow.

A session is a small bag of string values (PKCE flow fields, the normalized
user profile, and the path to return to after login) plus a time-to-live.
Two interchangeable backends implement the same ``get`` / ``save`` contract:

- CookieSessionStore: the values travel inside the cookie itself. The payload
  is signed as a JWT (HS256) and then encrypted with Fernet, so the browser
  can neither read nor modify it.
- MemorySessionStore: the cookie only carries a random session id and the
  values stay in process memory.

Unreadable, expired or foreign cookies never surface as errors: the request
simply gets a fresh anonymous session.
"""

import base64
import itertools
import logging
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import jwt
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from fastapi import Request
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from starlette.responses import Response

from kinde_app.auth.pkce import STATE_LENGTH, generate_token
from kinde_app.config import SEVEN_DAYS_SECONDS, Settings

logger = logging.getLogger(__name__)


SESSION_COOKIE_NAME = "kinde_session"
SESSION_ISSUER = "kinde-app"
SESSION_JWT_ALGORITHM = "HS256"

# Browsers drop cookies larger than this
MAX_COOKIE_LENGTH = 4096

# Memory backend housekeeping
PURGE_INTERVAL_SECONDS = 60
DEFAULT_MAX_RECORDS = 10_000

TRANSIENT_KEYS = ("oauth_state", "code_verifier")
PROFILE_KEYS = (
    "user_id",
    "user_email",
    "user_name",
    "user_first_name",
    "user_last_name",
    "user_initials",
    "user_picture",
)
REDIRECT_KEY = "redirect_after_login"


# =============================================================================
# Exceptions
# =============================================================================

class SessionError(Exception):
    """Base exception for session errors"""
    pass


class SessionDecodeError(SessionError):
    """Raised when a presented cookie cannot be turned back into a session"""
    pass


class SessionSaveError(SessionError):
    """Raised when a session cannot be persisted onto the response"""
    pass


# =============================================================================
# Session
# =============================================================================

class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    PENDING_AUTH = "pending_auth"
    AUTHENTICATED = "authenticated"


class Session:
    """
    One browser's session.

    Attributes:
        session_id: Opaque identifier, stable across saves
        values: String-to-string mapping of session fields
        max_age: Time-to-live in seconds; negative means "expire on save"
        is_new: True when no valid cookie was presented
        recovered: True when a cookie was presented but had to be discarded
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        values: Optional[Dict[str, str]] = None,
        max_age: int = SEVEN_DAYS_SECONDS,
        is_new: bool = True,
        recovered: bool = False,
    ):
        self.session_id = session_id or generate_token(STATE_LENGTH)
        self.values: Dict[str, str] = dict(values or {})
        self.max_age = max_age
        self.is_new = is_new
        self.recovered = recovered

    def __repr__(self) -> str:
        # values hold the verifier and profile, keep them out of logs
        return f"Session(state={self.state.value}, keys={sorted(self.values)}, is_new={self.is_new})"

    def __contains__(self, key: str) -> bool:
        return key in self.values

    def __getitem__(self, key: str) -> str:
        return self.values[key]

    def __setitem__(self, key: str, value: str) -> None:
        self.values[key] = value

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.get(key, default)

    def pop(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.pop(key, default)

    @property
    def user_id(self) -> Optional[str]:
        return self.values.get("user_id")

    @property
    def is_authenticated(self) -> bool:
        return "user_id" in self.values

    @property
    def state(self) -> SessionState:
        if "user_id" in self.values:
            return SessionState.AUTHENTICATED
        if "oauth_state" in self.values:
            return SessionState.PENDING_AUTH
        return SessionState.ANONYMOUS

    @property
    def is_expired(self) -> bool:
        return self.max_age < 0

    def clear_transient(self) -> None:
        """Drop the PKCE flow fields left by a login attempt."""
        for key in TRANSIENT_KEYS:
            self.values.pop(key, None)

    def begin_flow(self, state: str, code_verifier: str) -> None:
        """Enter PendingAuth, replacing whatever an earlier attempt left behind."""
        self.clear_transient()
        self.values["oauth_state"] = state
        self.values["code_verifier"] = code_verifier

    def authenticate(self, profile: Any) -> None:
        """
        Enter Authenticated from a normalized user profile.

        Profile fields from an earlier login are replaced, and the transient
        flow fields are removed in the same step so ``user_id`` never coexists
        with them.

        Args:
            profile: Object exposing ``to_session_values()`` (a UserProfile)
        """
        for key in PROFILE_KEYS:
            self.values.pop(key, None)
        self.values.update(profile.to_session_values())
        self.clear_transient()

    def expire(self) -> None:
        self.max_age = -1


# =============================================================================
# Store Base
# =============================================================================

class SessionStore:
    """
    Storage backend contract.

    ``get`` never raises for bad cookies; ``save`` raises SessionSaveError
    when the session cannot be written.
    """

    def __init__(
        self,
        max_age: int = SEVEN_DAYS_SECONDS,
        secure: bool = False,
        cookie_name: str = SESSION_COOKIE_NAME,
    ):
        self.max_age = max_age
        self.secure = secure
        self.cookie_name = cookie_name

    def new_session(self, recovered: bool = False) -> Session:
        return Session(max_age=self.max_age, is_new=True, recovered=recovered)

    def get(self, request: Request) -> Session:
        """
        Load the session for a request.

        Args:
            request: Incoming request carrying (maybe) the session cookie

        Returns:
            The stored session, or a fresh anonymous one
        """
        raw = request.cookies.get(self.cookie_name)
        if not raw:
            return self.new_session()

        try:
            return self._load(raw)
        except SessionDecodeError as e:
            logger.warning(
                f"Discarding unreadable session cookie: {e}",
                extra={"path": request.url.path},
            )
            return self.new_session(recovered=True)

    def save(self, session: Session, response: Response) -> None:
        """
        Persist the session onto the response as a single Set-Cookie header.

        A session with a negative max_age is destroyed instead.

        Raises:
            SessionSaveError: If the session cannot be persisted
        """
        if session.is_expired:
            self._discard(session)
            self.clear_cookie(response)
            return

        for key, value in session.values.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise SessionSaveError(f"Session value for {key!r} is not a string")

        try:
            cookie_value = self._store(session)
        except SessionSaveError:
            raise
        except Exception as e:
            logger.error(f"Failed to persist session: {e}", exc_info=True)
            raise SessionSaveError(f"Failed to persist session: {str(e)}") from e

        if len(cookie_value) > MAX_COOKIE_LENGTH:
            raise SessionSaveError(
                f"Encoded session is {len(cookie_value)} bytes (limit {MAX_COOKIE_LENGTH})"
            )

        response.set_cookie(
            key=self.cookie_name,
            value=cookie_value,
            max_age=session.max_age,
            path="/",
            httponly=True,
            secure=self.secure,
            samesite="lax",
        )
        session.is_new = False

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(
            key=self.cookie_name,
            path="/",
            httponly=True,
            secure=self.secure,
            samesite="lax",
        )

    def _load(self, raw: str) -> Session:
        raise NotImplementedError

    def _store(self, session: Session) -> str:
        raise NotImplementedError

    def _discard(self, session: Session) -> None:
        pass


# =============================================================================
# Cookie Backend
# =============================================================================

def _derive_key(secret: str, purpose: str) -> bytes:
    """32-byte key for one purpose ("sign" or "encrypt") from SESSION_SECRET."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=f"{SESSION_ISSUER}/{purpose}".encode("utf-8"),
    )
    return hkdf.derive(secret.encode("utf-8"))


class CookieSessionStore(SessionStore):
    """Keeps the whole session inside an encrypted, signed cookie."""

    def __init__(self, secret: str, **kwargs):
        super().__init__(**kwargs)
        if not secret:
            raise SessionError("SESSION_SECRET not configured")
        self._signing_key = _derive_key(secret, "sign")
        self._fernet = Fernet(base64.urlsafe_b64encode(_derive_key(secret, "encrypt")))

    def _store(self, session: Session) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sid": session.session_id,
            "values": session.values,
            "iat": now,
            "exp": now + timedelta(seconds=session.max_age),
            "iss": SESSION_ISSUER,
        }
        token = jwt.encode(payload, self._signing_key, algorithm=SESSION_JWT_ALGORITHM)
        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def _load(self, raw: str) -> Session:
        try:
            token = self._fernet.decrypt(raw.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as e:
            raise SessionDecodeError("cookie could not be decrypted") from e

        try:
            decoded = jwt.decode(
                token,
                self._signing_key,
                algorithms=[SESSION_JWT_ALGORITHM],
                issuer=SESSION_ISSUER,
                options={"require": ["exp", "iat", "iss", "sid"]},
            )
        except ExpiredSignatureError as e:
            raise SessionDecodeError("session has expired") from e
        except InvalidTokenError as e:
            raise SessionDecodeError(f"invalid session token: {e}") from e

        values = decoded.get("values")
        if not isinstance(values, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in values.items()
        ):
            raise SessionDecodeError("session values are malformed")

        return Session(
            session_id=decoded["sid"],
            values=values,
            max_age=self.max_age,
            is_new=False,
        )


# =============================================================================
# Memory Backend
# =============================================================================

class MemorySessionStore(SessionStore):
    """
    Keeps session values in process memory, keyed by the id in the cookie.

    Records live in a plain dict touched only from the event loop thread,
    ordered from least to most recently saved. Expired records are swept
    while saving, and once ``max_records`` is reached the least recently
    saved ones are evicted.
    """

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS, **kwargs):
        super().__init__(**kwargs)
        if max_records < 1:
            raise ValueError("max_records must be positive")
        self.max_records = max_records
        self._records: Dict[str, Tuple[Dict[str, str], float]] = {}
        self._next_purge_at = time.time() + PURGE_INTERVAL_SECONDS

    def __len__(self) -> int:
        return len(self._records)

    def _store(self, session: Session) -> str:
        now = time.time()
        if now >= self._next_purge_at:
            self.purge_expired()
            self._next_purge_at = now + PURGE_INTERVAL_SECONDS

        # re-insert to move the record to the most recent end
        self._records.pop(session.session_id, None)
        self._records[session.session_id] = (
            dict(session.values),
            now + session.max_age,
        )
        self._evict_overflow()
        return session.session_id

    def _load(self, raw: str) -> Session:
        record = self._records.get(raw)
        if record is None:
            raise SessionDecodeError("unknown session id")

        values, expires_at = record
        if time.time() >= expires_at:
            self._records.pop(raw, None)
            raise SessionDecodeError("session has expired")

        return Session(
            session_id=raw,
            values=values,
            max_age=self.max_age,
            is_new=False,
        )

    def _discard(self, session: Session) -> None:
        self._records.pop(session.session_id, None)

    def purge_expired(self) -> int:
        """Drop expired records; returns how many were removed."""
        now = time.time()
        expired = [sid for sid, (_, expires_at) in self._records.items() if now >= expires_at]
        for sid in expired:
            del self._records[sid]
        return len(expired)

    def _evict_overflow(self) -> None:
        overflow = len(self._records) - self.max_records
        if overflow <= 0:
            return

        for sid in list(itertools.islice(self._records, overflow)):
            del self._records[sid]
        logger.info(
            f"Session store full, evicted {overflow} least recently saved session(s)",
            extra={"max_records": self.max_records},
        )


# =============================================================================
# Factory & FastAPI Dependency
# =============================================================================

def build_session_store(settings: Settings) -> SessionStore:
    """Create the session backend selected by SESSION_BACKEND."""
    options = {
        "max_age": settings.SESSION_MAX_AGE_SECONDS,
        "secure": settings.SESSION_COOKIE_SECURE,
    }
    if settings.SESSION_BACKEND == "memory":
        return MemorySessionStore(max_records=settings.SESSION_MEMORY_MAX_RECORDS, **options)
    return CookieSessionStore(settings.SESSION_SECRET, **options)


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


__all__ = [
    "SESSION_COOKIE_NAME",
    "Session",
    "SessionState",
    "SessionStore",
    "CookieSessionStore",
    "MemorySessionStore",
    "build_session_store",
    "get_session_store",
    "SessionError",
    "SessionDecodeError",
    "SessionSaveError",
]
