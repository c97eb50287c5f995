"""
Authentication routes for the Kinde login flow.

This module implements the OAuth 2.0 authorization code flow with PKCE:
/login and /register start a flow, /callback completes it, /logout ends the
session. Every route answers with a redirect, except when a flow fails and a
short error page is shown instead.
"""

import asyncio
import html
import logging
import secrets
from typing import Mapping, Optional, Tuple

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import HTMLResponse, RedirectResponse

from kinde_app.auth.pkce import compute_challenge, generate_code_verifier, generate_state
from kinde_app.auth.provider import (
    ClientDisconnectedError,
    ProviderError,
    ProviderTimeoutError,
    get_kinde_client,
    run_bounded,
)
from kinde_app.auth.session import REDIRECT_KEY, Session, SessionError, get_session_store

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    tags=["authentication"],
)

LANDING_PATH = "/dashboard"

REGISTRATION_HINT = "registration"

# nginx-style status for a callback whose browser hung up; nothing is saved
# and no one reads the response, it only marks the access log
CLIENT_CLOSED_REQUEST = 499


class CallbackError(Exception):
    """Protocol violation detected while validating a callback"""

    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST, title: str = "Authentication Error"):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.title = title


# =============================================================================
# Login / Register
# =============================================================================

def _start_flow(request: Request, screen_hint: Optional[str], failure_message: str) -> Response:
    """
    Put the session into PendingAuth and redirect to the authorization endpoint.

    Any state/verifier left by an abandoned attempt is replaced, so a stale
    state can never be replayed.
    """
    store = get_session_store(request)
    client = get_kinde_client(request)

    session = store.get(request)
    if session.recovered:
        logger.info("Starting login with a new session after a bad cookie")

    state = generate_state()
    code_verifier = generate_code_verifier()
    session.begin_flow(state, code_verifier)

    authorization_url = client.authorization_url(
        state=state,
        code_challenge=compute_challenge(code_verifier),
        screen_hint=screen_hint,
    )
    response = RedirectResponse(url=authorization_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    try:
        store.save(session, response)
    except SessionError as e:
        logger.error(f"Error saving session: {e}", exc_info=True)
        return _render_error_page(
            title="Session Error",
            message=failure_message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    logger.info(
        "Redirecting to identity provider",
        extra={"screen_hint": screen_hint or "login", "session_was_new": session.is_new},
    )
    return response


@auth_router.get("/login", response_class=RedirectResponse)
async def login(request: Request):
    """Initiate the login flow by redirecting to Kinde."""
    return _start_flow(request, screen_hint=None, failure_message="Failed to initiate login. Please try again.")


@auth_router.get("/register", response_class=RedirectResponse)
async def register(request: Request):
    """Same as /login, but Kinde opens its sign-up screen."""
    return _start_flow(
        request,
        screen_hint=REGISTRATION_HINT,
        failure_message="Failed to initiate registration. Please try again.",
    )


# =============================================================================
# Callback
# =============================================================================

def validate_callback(session: Session, query: Mapping[str, str]) -> Tuple[str, str]:
    """
    Check a callback against the session, in order, before any exchange.

    Args:
        session: Session loaded for the callback request
        query: Callback query parameters

    Returns:
        (authorization code, PKCE code verifier)

    Raises:
        CallbackError: On the first failed check
    """
    expected_state = session.get("oauth_state")
    state = query.get("state") or ""

    if expected_state is None:
        raise CallbackError(
            "State not found in session. Your session may have expired. Please try logging in again."
        )
    if not state:
        raise CallbackError("No state parameter received from the identity provider.")
    if not secrets.compare_digest(state.encode("utf-8"), expected_state.encode("utf-8")):
        raise CallbackError(
            "Invalid state parameter (CSRF check failed). Please try logging in again.",
            title="Security Error",
        )

    error = query.get("error")
    if error:
        detail = query.get("error_description") or error
        raise CallbackError(f"Authentication was not completed: {detail}", title="Authentication Failed")

    code = query.get("code") or ""
    if not code:
        raise CallbackError("No authorization code received.")

    code_verifier = session.get("code_verifier")
    if not code_verifier:
        raise CallbackError("Code verifier not found in session. Please try logging in again.")

    return code, code_verifier


def _post_login_target(session: Session) -> str:
    """Consume redirect_after_login if it is a local path, else use the landing page."""
    target = session.pop(REDIRECT_KEY)
    if target and target.startswith("/") and not target.startswith("//") and "\\" not in target:
        return target
    return LANDING_PATH


@auth_router.get("/callback")
async def callback(request: Request):
    """
    Handle the OAuth callback from Kinde.

    This endpoint:
    1. Short-circuits when the session is already authenticated
    2. Validates state (CSRF), code and verifier
    3. Exchanges the code for an access token
    4. Fetches and normalizes the user profile
    5. Stores the profile in the session and clears the flow fields

    Nothing is written to the session unless every step succeeds.
    """
    store = get_session_store(request)
    client = get_kinde_client(request)
    settings = request.app.state.settings

    session = store.get(request)

    if session.is_authenticated:
        logger.info("Callback for an already authenticated session, redirecting to landing page")
        return RedirectResponse(url=LANDING_PATH, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    try:
        code, code_verifier = validate_callback(session, request.query_params)
    except CallbackError as e:
        logger.warning(
            f"Callback rejected: {e.message}",
            extra={"session_state": session.state.value, "session_was_new": session.is_new},
        )
        return _render_error_page(title=e.title, message=e.message, status_code=e.status_code)

    loop = asyncio.get_running_loop()
    deadline_at = loop.time() + settings.CALLBACK_DEADLINE_SECONDS

    try:
        try:
            token = await run_bounded(
                request,
                client.exchange_code(code, code_verifier),
                deadline_at - loop.time(),
            )
        except ProviderTimeoutError:
            raise
        except ProviderError as e:
            logger.error(f"Token exchange error: {e}")
            return _render_error_page(
                title="Authentication Error",
                message="Failed to exchange the authorization code. Please try logging in again.",
                status_code=status.HTTP_502_BAD_GATEWAY,
            )

        try:
            profile = await run_bounded(
                request,
                client.fetch_user_profile(token.access_token),
                max(deadline_at - loop.time(), 0.0),
            )
        except ProviderTimeoutError:
            raise
        except ProviderError as e:
            logger.error(f"Failed to fetch user info: {e}")
            return _render_error_page(
                title="Authentication Error",
                message="Failed to fetch user information. Please try logging in again.",
                status_code=status.HTTP_502_BAD_GATEWAY,
            )

    except ProviderTimeoutError as e:
        logger.error(f"Identity provider timed out: {e}")
        return _render_error_page(
            title="Authentication Error",
            message="The identity provider took too long to respond. Please try logging in again.",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        )
    except ClientDisconnectedError:
        logger.info("Client disconnected during callback")
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    if not profile.id:
        logger.error("User profile did not include an id")
        return _render_error_page(
            title="Authentication Error",
            message="The identity provider did not return a user id. Please try logging in again.",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    session.authenticate(profile)
    target = _post_login_target(session)
    response = RedirectResponse(url=target, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    try:
        store.save(session, response)
    except SessionError as e:
        logger.error(f"Error saving session: {e}", exc_info=True)
        return _render_error_page(
            title="Session Error",
            message="Failed to save session. Please try logging in again.",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    logger.info("Login successful", extra={"user_id": session.user_id, "redirect": target})
    return response


# =============================================================================
# Logout
# =============================================================================

@auth_router.get("/logout", response_class=RedirectResponse)
async def logout(request: Request):
    """
    Expire the session and redirect to the Kinde logout endpoint.

    The redirect happens even if the session could not be loaded or expired.
    """
    store = get_session_store(request)
    client = get_kinde_client(request)

    response = RedirectResponse(url=client.logout_url(), status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    try:
        session = store.get(request)
        session.expire()
        store.save(session, response)
    except SessionError as e:
        logger.error(f"Error clearing session: {e}")
        store.clear_cookie(response)

    return response


# =============================================================================
# Error Page
# =============================================================================

def _render_error_page(
    title: str,
    message: str,
    show_retry: bool = True,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> HTMLResponse:
    """
    Render error page for authentication failures.

    Args:
        title: Error title
        message: Error message (no internal detail)
        show_retry: Whether to show a link back to /login
        status_code: HTTP status code

    Returns:
        HTMLResponse with error information
    """
    retry_link = '<a href="/login" class="button">Try Again</a>' if show_retry else ""

    html_content = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{html.escape(title)}</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f3f4f6; display: flex; align-items: center; justify-content: center; min-height: 100vh; margin: 0; }}
        .container {{ background: white; border-radius: 12px; padding: 40px; max-width: 480px; text-align: center; box-shadow: 0 10px 40px rgba(0,0,0,0.1); }}
        h1 {{ color: #1f2937; font-size: 24px; }}
        .message {{ color: #6b7280; line-height: 1.6; margin-bottom: 32px; }}
        .button {{ background: #111827; color: white; padding: 12px 28px; border-radius: 8px; text-decoration: none; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{html.escape(title)}</h1>
        <p class="message">{html.escape(message)}</p>
        {retry_link}
    </div>
</body>
</html>
"""

    return HTMLResponse(content=html_content, status_code=status_code)
