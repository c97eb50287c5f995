"""
PKCE and CSRF state helpers.

Produces the two random values a login attempt needs (the CSRF ``state`` and
the PKCE ``code_verifier``) and derives the S256 ``code_challenge`` sent to the
identity provider.
"""

import base64
import hashlib
import secrets


STATE_LENGTH = 32
VERIFIER_LENGTH = 64
CHALLENGE_METHOD = "S256"


def generate_token(length: int) -> str:
    """
    Generate a URL-safe random token of exactly ``length`` characters.

    Characters come from the base64url alphabet (A-Z, a-z, 0-9, '-', '_').
    Randomness is read from the OS CSPRNG through ``secrets``; if that source
    is unavailable the error propagates, since nothing sensible can be done
    at request level.

    Args:
        length: Number of characters to return (must be positive)

    Returns:
        Random token string
    """
    if length <= 0:
        raise ValueError(f"Token length must be positive, got: {length}")

    # length bytes always encode to more than length characters
    raw = secrets.token_bytes(length)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")[:length]


def generate_state() -> str:
    return generate_token(STATE_LENGTH)


def generate_code_verifier() -> str:
    return generate_token(VERIFIER_LENGTH)


def compute_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier, without padding
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
