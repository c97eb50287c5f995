"""
Application Pages
=================

Public and protected routes of the application that sit behind the login
flow. They return JSON built from the session; page templates are served
elsewhere.

Endpoints:
----------
- GET /            : public, reports whether the browser is logged in
                     (or, in setup mode, which settings are missing)
- GET /dashboard   : protected landing page after login
- GET /profile     : protected profile view
- GET /api/user    : protected JSON user document
- GET /health      : liveness check
"""

import logging
from typing import Union

from fastapi import APIRouter, Depends, Request, Response

from kinde_app.auth.gate import require_user
from kinde_app.auth.session import Session, get_session_store
from kinde_app.models import HealthResponse, HomeResponse, SessionUser, SetupResponse, UserResponse

logger = logging.getLogger(__name__)

pages_router = APIRouter(tags=["pages"])


@pages_router.get("/", response_model=Union[HomeResponse, SetupResponse])
async def home(request: Request, response: Response):
    settings = request.app.state.settings
    if not settings.is_configured:
        return SetupResponse(
            current_domain=settings.KINDE_DOMAIN,
            missing=settings.missing_settings(),
        )

    store = get_session_store(request)
    session = store.get(request)

    if session.recovered:
        # drop the unreadable cookie so the browser stops sending it
        store.clear_cookie(response)

    if not session.is_authenticated:
        return HomeResponse(authenticated=False)

    return HomeResponse(authenticated=True, user=SessionUser.from_session_values(session.values))


@pages_router.get("/dashboard", response_model=SessionUser)
async def dashboard(session: Session = Depends(require_user)):
    return SessionUser.from_session_values(session.values)


@pages_router.get("/profile", response_model=SessionUser)
async def profile(session: Session = Depends(require_user)):
    user = SessionUser.from_session_values(session.values)
    return SessionUser(id=user.id, name=user.name, email=user.email, picture=user.picture)


@pages_router.get("/api/user", response_model=UserResponse)
async def get_user(session: Session = Depends(require_user)):
    return UserResponse(
        id=session.get("user_id"),
        name=session.get("user_name"),
        email=session.get("user_email"),
        picture=session.get("user_picture"),
    )


@pages_router.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse()
