"""Session id generation and validation."""

from __future__ import annotations

import random
from typing import Optional

# Deliberately the same alphabet as the sidecar's own tooling (no "u").
SESSION_ID_ALPHABET = "abcdefghijklmnopqrstvwxyz0123456789"
DEFAULT_SESSION_ID_PREFIX = "luci"
DEFAULT_SESSION_ID_LENGTH = 16


def create_session_id(
    *,
    prefix: str = DEFAULT_SESSION_ID_PREFIX,
    length: int = DEFAULT_SESSION_ID_LENGTH,
    rng: Optional[random.Random] = None,
) -> str:
    """
    Create a new session id (`<prefix><length random chars>`).

    Args:
    - prefix: fixed prefix, part of the directory name
    - length: number of random characters (>= 1)
    - rng: optional random source (tests); defaults to `random.SystemRandom`
    """

    if length < 1:
        raise ValueError("length must be >= 1")
    r = rng or random.SystemRandom()
    return validate_session_id(prefix + "".join(r.choice(SESSION_ID_ALPHABET) for _ in range(length)))


def validate_session_id(session_id: str) -> str:
    """Return `session_id` unchanged if it can be used as a single directory name, else raise ValueError."""

    if not isinstance(session_id, str) or not session_id.strip():
        raise ValueError("session_id must be a non-empty string")
    if session_id != session_id.strip():
        raise ValueError(f"session_id must not have surrounding whitespace: {session_id!r}")
    if session_id in {".", ".."} or "/" in session_id or "\\" in session_id or "\x00" in session_id:
        raise ValueError(f"session_id is not filesystem-safe: {session_id!r}")
    return session_id
