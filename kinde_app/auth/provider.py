"""
Kinde identity-provider client.

This module handles:
- Building the authorization and logout URLs
- Exchanging an authorization code (plus PKCE verifier) for an access token
- Fetching the user profile with that access token
- Bounding outbound work by a deadline and by the inbound client connection
"""

import inspect
import logging
from typing import Any, Awaitable, Dict, Optional, TypeVar
from urllib.parse import urlencode

import anyio
import httpx
from fastapi import Request
from pydantic import ValidationError

from kinde_app.auth.pkce import CHALLENGE_METHOD
from kinde_app.config import Settings
from kinde_app.models import TokenResponse, UserProfile

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCOPES = ("openid", "profile", "email", "offline")


# =============================================================================
# Exceptions
# =============================================================================

class ProviderError(Exception):
    """Transport failure or error reported by the identity provider"""
    pass


class ProviderTimeoutError(ProviderError):
    """Outbound work did not finish before the request deadline"""
    pass


class ClientDisconnectedError(Exception):
    """The inbound client went away while outbound work was pending"""
    pass


# =============================================================================
# Client
# =============================================================================

class KindeClient:
    """
    Talks to the Kinde OAuth2 endpoints.

    One instance is created at startup and shared read-only by all requests;
    the wrapped httpx.AsyncClient is safe for concurrent use.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http = http_client

    # -------------------------------------------------------------------------
    # Redirect URLs
    # -------------------------------------------------------------------------

    def authorization_url(
        self,
        state: str,
        code_challenge: str,
        screen_hint: Optional[str] = None,
    ) -> str:
        """
        Build the authorization URL the browser is redirected to.

        Args:
            state: CSRF state stored in the session
            code_challenge: S256 challenge derived from the session's verifier
            screen_hint: Optional Kinde hint (e.g. "registration")

        Returns:
            Full authorization URL
        """
        params = {
            "response_type": "code",
            "client_id": self.settings.KINDE_CLIENT_ID,
            "redirect_uri": self.settings.KINDE_REDIRECT_URI,
            "scope": " ".join(SCOPES),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": CHALLENGE_METHOD,
        }
        if screen_hint:
            params["screen_hint"] = screen_hint

        return f"{self.settings.authorization_endpoint}?{urlencode(params)}"

    def logout_url(self) -> str:
        query = urlencode({"redirect": self.settings.KINDE_LOGOUT_REDIRECT_URI})
        return f"{self.settings.logout_endpoint}?{query}"

    # -------------------------------------------------------------------------
    # Outbound Calls
    # -------------------------------------------------------------------------

    async def exchange_code(self, code: str, code_verifier: str) -> TokenResponse:
        """
        Exchange authorization code for tokens.

        Args:
            code: Authorization code from callback
            code_verifier: PKCE verifier stored at login

        Returns:
            Parsed token response (only access_token is relied on)

        Raises:
            ProviderError: If the call fails or the provider rejects the code
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.KINDE_REDIRECT_URI,
            "client_id": self.settings.KINDE_CLIENT_ID,
            "client_secret": self.settings.KINDE_CLIENT_SECRET,
            "code_verifier": code_verifier,
        }

        try:
            response = await self.http.post(
                self.settings.token_endpoint,
                data=payload,
                headers={"Accept": "application/json"},
                timeout=self.settings.KINDE_HTTP_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError("Token endpoint timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Token endpoint unreachable: {e}") from e

        data = _json_body(response, "Token endpoint")

        if not response.is_success:
            error_msg = data.get("error_description") or data.get("error") or f"HTTP {response.status_code}"
            raise ProviderError(f"Token exchange failed: {error_msg}")

        try:
            return TokenResponse.model_validate(data)
        except ValidationError as e:
            raise ProviderError("Token response missing access_token") from e

    async def fetch_user_profile(self, access_token: str) -> UserProfile:
        """
        Fetch the subject's profile from the userinfo endpoint.

        Raises:
            ProviderError: If the call fails or returns a non-200 status
        """
        try:
            response = await self.http.get(
                self.settings.userinfo_endpoint,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
                timeout=self.settings.KINDE_HTTP_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError("Userinfo endpoint timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Userinfo endpoint unreachable: {e}") from e

        if response.status_code != 200:
            raise ProviderError(f"Userinfo request failed with status: {response.status_code}")

        return UserProfile.model_validate(_json_body(response, "Userinfo endpoint"))


def _json_body(response: httpx.Response, source: str) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderError(f"{source} returned a non-JSON body (HTTP {response.status_code})") from e

    if not isinstance(data, dict):
        raise ProviderError(f"{source} returned an unexpected JSON document")
    return data


# =============================================================================
# Request-bounded Execution
# =============================================================================

async def run_bounded(request: Request, awaitable: Awaitable[T], deadline: float) -> T:
    """
    Await outbound work, giving up at the deadline or when the client leaves.

    The work runs in a task group next to a listener that waits on the ASGI
    receive channel for ``http.disconnect``. Whichever finishes first cancels
    the group. Cancelling the calling task cancels both.

    Args:
        request: Inbound request whose connection bounds the work
        awaitable: Outbound coroutine (token exchange, userinfo fetch)
        deadline: Seconds to wait before giving up

    Returns:
        The awaitable's result

    Raises:
        ProviderTimeoutError: If the deadline passes first
        ClientDisconnectedError: If the client disconnects first
    """
    outcome: Dict[str, Any] = {}

    async def run_work(scope: anyio.CancelScope) -> None:
        try:
            outcome["result"] = await awaitable
        except Exception as e:
            # raised below, outside the task group
            outcome["error"] = e
        scope.cancel()

    async def listen_for_disconnect(scope: anyio.CancelScope) -> None:
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                break
        scope.cancel()

    try:
        with anyio.fail_after(deadline):
            async with anyio.create_task_group() as task_group:
                task_group.start_soon(run_work, task_group.cancel_scope)
                task_group.start_soon(listen_for_disconnect, task_group.cancel_scope)
    except TimeoutError:
        raise ProviderTimeoutError(f"Identity provider did not answer within {deadline:g}s") from None
    finally:
        if inspect.iscoroutine(awaitable):
            # no-op unless the group was cancelled before the work started
            awaitable.close()

    if "error" in outcome:
        raise outcome["error"]
    if "result" in outcome:
        return outcome["result"]
    raise ClientDisconnectedError("Client disconnected before the provider answered")


# =============================================================================
# FastAPI Dependency
# =============================================================================

def get_kinde_client(request: Request) -> KindeClient:
    return request.app.state.kinde_client
