"""
Access gate for protected routes.

Usage in routes:
    @router.get("/dashboard")
    async def dashboard(session: Session = Depends(require_user)):
        ...

An anonymous request never reaches the route: ``require_user`` raises
LoginRequired, and ``login_required_handler`` (registered on the app) turns it
into a redirect to /login after remembering where the user was going.
"""

import logging

from fastapi import Request, status
from fastapi.responses import RedirectResponse

from kinde_app.auth.session import REDIRECT_KEY, Session, SessionError, get_session_store

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"


class LoginRequired(Exception):
    """Raised by the gate when the session has no user_id"""

    def __init__(self, session: Session, requested_path: str):
        super().__init__(f"Login required for {requested_path}")
        self.session = session
        self.requested_path = requested_path


def _requested_path(request: Request) -> str:
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    return path


async def require_user(request: Request) -> Session:
    """
    FastAPI dependency guarding a route.

    Only the presence of ``user_id`` is checked; profile fields are left to
    the route.

    Returns:
        The authenticated session

    Raises:
        LoginRequired: If the session is anonymous or could not be loaded
    """
    store = get_session_store(request)
    session = store.get(request)

    if not session.is_authenticated:
        logger.info("Unauthenticated request to protected route", extra={"path": request.url.path})
        raise LoginRequired(session, _requested_path(request))

    return session


async def login_required_handler(request: Request, exc: LoginRequired) -> RedirectResponse:
    """
    Redirect to the login entry point, preserving the requested path.

    Persisting the path is best effort: the redirect happens either way.
    """
    response = RedirectResponse(url=LOGIN_PATH, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    exc.session[REDIRECT_KEY] = exc.requested_path
    try:
        get_session_store(request).save(exc.session, response)
    except SessionError as e:
        logger.warning(f"Could not remember redirect target: {e}", extra={"path": exc.requested_path})

    return response
