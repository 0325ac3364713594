import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import bcrypt

# bcrypt only looks at the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72


@dataclass(frozen=True)
class Identity:
    """An account email the caller has been verified to act as."""

    email: str


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def is_hashed(stored: str) -> bool:
    return stored.startswith(("$2a$", "$2b$", "$2y$"))


def verify_password(password: str, stored: str) -> bool:
    """Check ``password`` against a stored credential.

    Credentials written before hashing was introduced are plaintext and are
    compared directly.
    """
    if not is_hashed(stored):
        return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))

    try:
        return bcrypt.checkpw(_encode(password), stored.encode("utf-8"))
    except ValueError:
        return False


class SessionRegistry:
    """In-process map of session tokens to account emails.

    An account holds at most one token; logging in again replaces it.
    Tokens expire ``ttl_seconds`` after they are issued.
    """

    def __init__(self, ttl_seconds: float = 86400, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.tokens: Dict[str, Tuple[str, float]] = {}
        self.by_email: Dict[str, str] = {}

    def issue(self, email: str) -> str:
        self.prune()
        previous = self.by_email.get(email)
        if previous is not None:
            self.revoke(previous)

        token = secrets.token_urlsafe(32)
        self.tokens[token] = (email, self.clock() + self.ttl_seconds)
        self.by_email[email] = token
        return token

    def resolve(self, token: str) -> Optional[Identity]:
        entry = self.tokens.get(token)
        if entry is None:
            return None
        email, expires_at = entry
        if self.clock() >= expires_at:
            self.revoke(token)
            return None
        return Identity(email=email)

    def revoke(self, token: str) -> None:
        entry = self.tokens.pop(token, None)
        if entry is not None and self.by_email.get(entry[0]) == token:
            del self.by_email[entry[0]]

    def prune(self) -> None:
        now = self.clock()
        for token in [t for t, (_, expires_at) in self.tokens.items() if now >= expires_at]:
            self.revoke(token)
