"""
Session Tests
=============

Covers the Session state machine and both storage backends:
cookie round trip, tampering, expiry, foreign secrets, size limits and
logout expiry.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import pytest
from starlette.requests import Request
from starlette.responses import Response

from kinde_app.auth.session import (
    SESSION_COOKIE_NAME,
    SESSION_ISSUER,
    CookieSessionStore,
    MemorySessionStore,
    PURGE_INTERVAL_SECONDS,
    Session,
    SessionDecodeError,
    SessionSaveError,
    SessionState,
    _derive_key,
    build_session_store,
)
from kinde_app.models import UserProfile
from kinde_app.tests.support import cookie_from_response, make_settings


SECRET = "test-session-secret-0123456789abcdef"


def make_request(cookie: Optional[str] = None) -> Request:
    headers = []
    if cookie is not None:
        headers.append((b"cookie", f"{SESSION_COOKIE_NAME}={cookie}".encode("latin-1")))
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "query_string": b"",
        "headers": headers,
    })


def round_trip(store, session: Session) -> Session:
    response = Response()
    store.save(session, response)
    return store.get(make_request(cookie_from_response(response)))


# ============================================================================
# Session State Machine
# ============================================================================

class TestSessionState:

    def test_new_session_is_anonymous(self):
        session = Session()

        assert session.state == SessionState.ANONYMOUS
        assert session.is_new
        assert len(session.session_id) == 32

    def test_begin_flow_enters_pending(self):
        session = Session()
        session.begin_flow("state-1", "verifier-1")

        assert session.state == SessionState.PENDING_AUTH
        assert session["oauth_state"] == "state-1"
        assert session["code_verifier"] == "verifier-1"

    def test_begin_flow_overwrites_previous_attempt(self):
        session = Session(values={"oauth_state": "old", "code_verifier": "old-v"})
        session.begin_flow("new", "new-v")

        assert session["oauth_state"] == "new"
        assert session["code_verifier"] == "new-v"

    def test_authenticate_clears_transient_fields(self):
        session = Session()
        session.begin_flow("state-1", "verifier-1")
        session.authenticate(UserProfile(id="u1", preferred_email="a@b.com", given_name="Ada"))

        assert session.state == SessionState.AUTHENTICATED
        assert session.user_id == "u1"
        assert "oauth_state" not in session
        assert "code_verifier" not in session

    def test_authenticate_replaces_previous_profile(self):
        session = Session(values={"user_picture": "https://old/pic.png"})
        session.authenticate(UserProfile(id="u2", given_name="Grace"))

        assert "user_picture" not in session
        assert session["user_name"] == "Grace"

    def test_authenticate_keeps_redirect_target(self):
        session = Session(values={"redirect_after_login": "/profile"})
        session.authenticate(UserProfile(id="u1"))

        assert session["redirect_after_login"] == "/profile"

    def test_repr_hides_values(self):
        session = Session(values={"code_verifier": "super-secret-verifier"})

        assert "super-secret-verifier" not in repr(session)


# ============================================================================
# Cookie Backend
# ============================================================================

class TestCookieSessionStore:

    @pytest.fixture
    def store(self):
        return CookieSessionStore(SECRET)

    def test_no_cookie_gives_fresh_session(self, store):
        session = store.get(make_request())

        assert session.is_new
        assert not session.recovered
        assert session.values == {}

    def test_round_trip(self, store):
        session = Session(values={"user_id": "u1", "user_name": "Ada Lovelace"})

        loaded = round_trip(store, session)

        assert not loaded.is_new
        assert loaded.session_id == session.session_id
        assert loaded.values == {"user_id": "u1", "user_name": "Ada Lovelace"}

    def test_cookie_attributes(self, store):
        response = Response()
        store.save(Session(values={"user_id": "u1"}), response)

        header = response.headers["set-cookie"]
        assert header.startswith(f"{SESSION_COOKIE_NAME}=")
        assert "HttpOnly" in header
        assert "Max-Age=604800" in header
        assert "Path=/" in header
        assert "Secure" not in header

    def test_secure_flag(self):
        store = CookieSessionStore(SECRET, secure=True)
        response = Response()
        store.save(Session(), response)

        assert "Secure" in response.headers["set-cookie"]

    def test_cookie_is_opaque(self, store):
        response = Response()
        store.save(Session(values={"user_email": "ada@example.com"}), response)

        assert "ada@example.com" not in response.headers["set-cookie"]

    def test_tampered_cookie_is_anonymous(self, store):
        response = Response()
        store.save(Session(values={"user_id": "u1"}), response)
        value = cookie_from_response(response)
        tampered = value[:-5] + ("A" if value[-5] != "A" else "B") + value[-4:]

        session = store.get(make_request(tampered))

        assert session.recovered
        assert session.state == SessionState.ANONYMOUS

    def test_garbage_cookie_is_anonymous(self, store):
        session = store.get(make_request("not-a-session"))

        assert session.recovered
        assert session.values == {}

    def test_other_secret_is_anonymous(self, store):
        other = CookieSessionStore("another-secret-0123456789abcdefgh")
        response = Response()
        other.save(Session(values={"user_id": "u1"}), response)

        session = store.get(make_request(cookie_from_response(response)))

        assert session.recovered
        assert not session.is_authenticated

    def test_expired_payload_is_anonymous(self, store):
        past = datetime.now(timezone.utc) - timedelta(days=8)
        token = jwt.encode(
            {
                "sid": "x" * 32,
                "values": {"user_id": "u1"},
                "iat": past,
                "exp": past + timedelta(days=7),
                "iss": SESSION_ISSUER,
            },
            store._signing_key,
            algorithm="HS256",
        )
        value = store._fernet.encrypt(token.encode()).decode()

        session = store.get(make_request(value))

        assert session.recovered
        assert not session.is_authenticated

    def test_non_string_value_rejected(self, store):
        session = Session()
        session.values["user_id"] = 42

        with pytest.raises(SessionSaveError):
            store.save(session, Response())

    def test_oversized_session_rejected(self, store):
        session = Session(values={"user_picture": "x" * 5000})

        with pytest.raises(SessionSaveError):
            store.save(session, Response())

    def test_expired_session_deletes_cookie(self, store):
        session = Session(values={"user_id": "u1"})
        session.expire()
        response = Response()

        store.save(session, response)

        header = response.headers["set-cookie"]
        assert header.startswith(f"{SESSION_COOKIE_NAME}=")
        assert "Max-Age=0" in header

    def test_keys_are_separate_per_purpose(self):
        signing = _derive_key(SECRET, "sign")
        encryption = _derive_key(SECRET, "encrypt")

        assert len(signing) == len(encryption) == 32
        assert signing != encryption
        assert _derive_key(SECRET, "sign") == signing

    def test_same_secret_reads_cookie_across_instances(self, store):
        other = CookieSessionStore(SECRET)
        session = Session(values={"user_id": "u1"})

        response = Response()
        store.save(session, response)
        loaded = other.get(make_request(cookie_from_response(response)))

        assert loaded.user_id == "u1"


# ============================================================================
# Memory Backend
# ============================================================================

class TestMemorySessionStore:

    @pytest.fixture
    def store(self):
        return MemorySessionStore()

    def test_cookie_holds_only_the_id(self, store):
        session = Session(values={"user_email": "ada@example.com"})
        response = Response()
        store.save(session, response)

        assert cookie_from_response(response) == session.session_id
        assert len(store) == 1

    def test_round_trip(self, store):
        session = Session(values={"user_id": "u1"})

        loaded = round_trip(store, session)

        assert loaded.values == {"user_id": "u1"}
        assert not loaded.is_new

    def test_unknown_id_is_anonymous(self, store):
        session = store.get(make_request("unknown-session-id"))

        assert session.recovered
        assert session.values == {}

    def test_expired_record_is_anonymous(self, store, monkeypatch):
        session = Session(values={"user_id": "u1"})
        response = Response()
        store.save(session, response)

        real_time = time.time
        monkeypatch.setattr(
            "kinde_app.auth.session.time.time",
            lambda: real_time() + store.max_age + 1,
        )

        loaded = store.get(make_request(session.session_id))

        assert loaded.recovered
        assert len(store) == 0

    def test_expire_drops_record(self, store):
        session = Session(values={"user_id": "u1"})
        store.save(session, Response())

        session.expire()
        response = Response()
        store.save(session, response)

        assert len(store) == 0
        assert "Max-Age=0" in response.headers["set-cookie"]

    def test_purge_expired(self, store, monkeypatch):
        store.save(Session(), Response())
        store.save(Session(), Response())

        real_time = time.time
        monkeypatch.setattr(
            "kinde_app.auth.session.time.time",
            lambda: real_time() + store.max_age + 1,
        )

        assert store.purge_expired() == 2
        assert len(store) == 0

    def test_saving_sweeps_expired_records(self, store, monkeypatch):
        store.save(Session(), Response())
        store.save(Session(), Response())

        later = time.time() + store.max_age + PURGE_INTERVAL_SECONDS + 1
        monkeypatch.setattr("kinde_app.auth.session.time.time", lambda: later)
        store.save(Session(), Response())

        assert len(store) == 1

    def test_cap_evicts_least_recently_saved(self):
        store = MemorySessionStore(max_records=2)
        first, second, third = Session(), Session(), Session()
        store.save(first, Response())
        store.save(second, Response())
        store.save(first, Response())

        store.save(third, Response())

        assert len(store) == 2
        assert store._load(first.session_id).session_id == first.session_id
        assert store._load(third.session_id).session_id == third.session_id
        with pytest.raises(SessionDecodeError):
            store._load(second.session_id)

    def test_max_records_must_be_positive(self):
        with pytest.raises(ValueError):
            MemorySessionStore(max_records=0)


def test_build_session_store_selects_backend():
    assert isinstance(build_session_store(make_settings()), CookieSessionStore)
    assert isinstance(build_session_store(make_settings(SESSION_BACKEND="memory")), MemorySessionStore)
