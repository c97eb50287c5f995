"""
Authentication Package

This package handles user authentication against Kinde using the OAuth 2.0
authorization code flow with PKCE, and the session that remembers the result.

Key responsibilities:
- State and PKCE verifier generation
- Login / register initiation and callback handling
- Token exchange and user-profile normalization
- Encrypted cookie (or in-memory) session storage
- Gate dependency protecting routes

Modules:
- pkce: random tokens and the S256 code challenge
- session: Session object and storage backends
- provider: Kinde endpoint client and request-bounded outbound calls
- routes: /login, /register, /callback, /logout
- gate: require_user dependency and its redirect handler

The authentication flow:
1. Browser hits /login; state and verifier are stored in the session
2. User authenticates with Kinde
3. Kinde redirects to /callback with code and state
4. State is checked, code exchanged, profile fetched and stored
5. Protected routes read user_id from the session through the gate
"""

from .gate import LoginRequired, login_required_handler, require_user
from .routes import auth_router

__all__ = [
    "auth_router",
    "require_user",
    "LoginRequired",
    "login_required_handler",
]
