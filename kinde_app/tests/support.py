"""
Test helpers: a fake Kinde server and session cookie utilities.

The identity provider is replaced by an ``httpx.MockTransport`` so the real
KindeClient code runs end to end without network access.
"""

from http.cookies import SimpleCookie
from typing import Callable, Dict, List, Optional

import httpx
from fastapi.testclient import TestClient
from starlette.responses import Response

from kinde_app.auth.provider import KindeClient
from kinde_app.auth.session import SESSION_COOKIE_NAME, Session
from kinde_app.config import Settings
from kinde_app.main import create_app


KINDE_DOMAIN = "https://example.kinde.com"

# http.cookiejar files cookies from http://testserver under this domain
TEST_COOKIE_DOMAIN = "testserver.local"


def make_settings(**overrides) -> Settings:
    """Complete settings pointing at a fake Kinde domain"""
    values = {
        "KINDE_DOMAIN": KINDE_DOMAIN,
        "KINDE_CLIENT_ID": "test-client-id",
        "KINDE_CLIENT_SECRET": "test-client-secret",
        "KINDE_REDIRECT_URI": "http://localhost:3000/callback",
        "KINDE_LOGOUT_REDIRECT_URI": "http://localhost:3000",
        "SESSION_SECRET": "test-session-secret-0123456789abcdef",
    }
    values.update(overrides)
    return Settings(**values)


class FakeKinde:
    """
    Stand-in for the Kinde token and userinfo endpoints.

    Attributes:
        requests: Every request the client sent, in order
        token_status / token_body: Response of the token endpoint
        profile_status / profile_body: Response of the userinfo endpoint
        on_request: Optional coroutine run before answering (e.g. to stall)
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_status = 200
        self.token_body: Dict = {"access_token": "mock-access-token", "token_type": "bearer", "expires_in": 3600}
        self.profile_status = 200
        self.profile_body: Dict = {
            "id": "u1",
            "preferred_email": "a@b.com",
            "given_name": "Ada",
            "family_name": "Lovelace",
        }
        self.on_request: Optional[Callable] = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            await self.on_request(request)
        if request.url.path == "/oauth2/token":
            return httpx.Response(self.token_status, json=self.token_body)
        if request.url.path == "/oauth2/user_profile":
            return httpx.Response(self.profile_status, json=self.profile_body)
        return httpx.Response(404)

    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]


def build_test_app(settings: Settings, fake_kinde: FakeKinde):
    app = create_app(settings)
    app.state.kinde_client = KindeClient(
        settings,
        httpx.AsyncClient(transport=httpx.MockTransport(fake_kinde.handler)),
    )
    return app


def cookie_from_response(response) -> Optional[str]:
    """Value of the session cookie set by a response, if any"""
    header = response.headers.get("set-cookie")
    if not header:
        return None
    parsed = SimpleCookie()
    parsed.load(header)
    morsel = parsed.get(SESSION_COOKIE_NAME)
    return morsel.value if morsel else None


def read_session(app, client: TestClient) -> Optional[Session]:
    """Decode the session currently held in the test client's cookie jar"""
    raw = client.cookies.get(SESSION_COOKIE_NAME)
    if not raw:
        return None
    # the jar keeps the quotes added around values containing '='
    return app.state.session_store._load(raw.strip('"'))


def write_session(app, client: TestClient, values: Dict[str, str]) -> Session:
    """Store a session with the given values in the test client's cookie jar"""
    session = Session(values=values)
    response = Response()
    app.state.session_store.save(session, response)
    # same jar key as cookies set by the app, so later responses replace it
    client.cookies.set(SESSION_COOKIE_NAME, cookie_from_response(response), domain=TEST_COOKIE_DOMAIN)
    return session
