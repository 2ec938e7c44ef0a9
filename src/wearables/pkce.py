"""PKCE (RFC 7636) and opaque token generation.

S256 only; there is no ``plain`` fallback.  All randomness comes from
``secrets`` (the OS CSPRNG).
"""

from __future__ import annotations

import hashlib
import secrets
from base64 import urlsafe_b64encode

PKCE_METHOD = "S256"

# 32 bytes -> 43 chars base64url, 256 bits of entropy
_TOKEN_BYTES = 32


def new_opaque_token() -> str:
    """Random URL-safe token used as request id and provider-facing ``state``."""
    return secrets.token_urlsafe(_TOKEN_BYTES)


def challenge_for(verifier: str) -> str:
    """S256 code_challenge for a verifier: base64url(sha256(verifier)), unpadded."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def new_verifier_challenge_pair() -> tuple[str, str]:
    """Generate ``(code_verifier, code_challenge)``.

    The verifier is 43 characters, inside the 43-128 range RFC 7636 allows.
    """
    verifier = secrets.token_urlsafe(_TOKEN_BYTES)
    return verifier, challenge_for(verifier)
