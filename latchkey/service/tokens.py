from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass


@dataclass(frozen=True)
class GeneratedToken:
    token: str  # handed to the user, never stored
    digest: str  # stored for lookup

    def __repr__(self) -> str:
        return f"GeneratedToken(digest={self.digest[:8]}...)"


class TokenGenerator:
    """Opaque single-use tokens and their storable SHA-256 digests.

    Tokens already carry at least 256 bits of entropy, so a fast hash is
    enough to keep a leaked table from yielding usable tokens.
    """

    def __init__(self, nbytes: int = 32) -> None:
        if nbytes < 32:
            raise ValueError("tokens need at least 32 random bytes")
        self.nbytes = nbytes

    def generate(self) -> GeneratedToken:
        token = secrets.token_hex(self.nbytes)
        return GeneratedToken(token=token, digest=self.digest(token))

    @staticmethod
    def digest(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()
