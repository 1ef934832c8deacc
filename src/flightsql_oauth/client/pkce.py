"""
PKCE (Proof Key for Code Exchange, RFC 7636) verifier/challenge generation.
"""

import base64
import hashlib
import secrets
import string

from pydantic import BaseModel, Field

# RFC 7636 section 4.1 中定义的 unreserved 字符集
UNRESERVED_CHARACTERS = string.ascii_letters + string.digits + "-._~"

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 64


def compute_code_challenge(code_verifier: str) -> str:
    """Return base64url(SHA-256(ASCII(code_verifier))) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    """Random anti-CSRF ``state`` value for one authorization request."""
    return secrets.token_urlsafe(32)


class PKCEParameters(BaseModel):
    """PKCE parameters for a single authorization attempt."""

    code_verifier: str = Field(..., min_length=MIN_VERIFIER_LENGTH, max_length=MAX_VERIFIER_LENGTH)
    code_challenge: str = Field(..., min_length=43, max_length=128)
    code_challenge_method: str = "S256"

    @classmethod
    def generate(cls, length: int = DEFAULT_VERIFIER_LENGTH) -> "PKCEParameters":
        """Generate new PKCE parameters with a verifier of ``length`` characters."""
        if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
            raise ValueError(
                f"Verifier length must be between {MIN_VERIFIER_LENGTH} and {MAX_VERIFIER_LENGTH} characters"
            )
        code_verifier = "".join(secrets.choice(UNRESERVED_CHARACTERS) for _ in range(length))
        return cls(code_verifier=code_verifier, code_challenge=compute_code_challenge(code_verifier))
