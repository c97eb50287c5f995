"""
Kinde login service.

A FastAPI application that signs users in with Kinde using the OAuth 2.0
authorization code flow with PKCE and keeps the result in an encrypted
session cookie.

Subpackages:
    - auth:  login flow, session storage, access gate
    - pages: application routes behind the gate
"""

__version__ = "1.0.0"
