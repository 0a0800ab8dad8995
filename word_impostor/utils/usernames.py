import random
import re
from typing import List, Optional

from word_impostor.exceptions import InvalidUsername

MIN_LENGTH = 2
MAX_LENGTH = 20
_VALID = re.compile(r"^[A-Za-z0-9_-]+$")
_SUFFIXES = ["_new", "_player", "_gamer", "_user", "_guest"]


def validate_username(username: str) -> str:
    """Return the trimmed username or raise InvalidUsername."""
    trimmed = (username or "").strip()
    if not trimmed:
        raise InvalidUsername("Username is required")
    if len(trimmed) < MIN_LENGTH:
        raise InvalidUsername(f"Username must be at least {MIN_LENGTH} characters")
    if len(trimmed) > MAX_LENGTH:
        raise InvalidUsername(f"Username must be at most {MAX_LENGTH} characters")
    if not _VALID.match(trimmed):
        raise InvalidUsername(
            "Username can only contain letters, numbers, underscores, and hyphens"
        )
    return trimmed


def suggest_usernames(
    base: str,
    taken: Optional[List[str]] = None,
    rng: Optional[random.Random] = None,
    limit: int = 5,
) -> List[str]:
    """Alternatives for a taken name, skipping anything already in use."""
    rng = rng or random.Random()
    stem = base.strip().lower()[: MAX_LENGTH - 4]
    taken_lower = {t.lower() for t in (taken or [])}
    candidates = [f"{stem}{i}" for i in range(1, 6)]
    candidates += [f"{stem}{suffix}" for suffix in _SUFFIXES]
    candidates += [f"{stem}{rng.randint(0, 999)}" for _ in range(3)]

    suggestions: List[str] = []
    for name in candidates:
        name = name[:MAX_LENGTH]
        if name.lower() in taken_lower or name in suggestions:
            continue
        suggestions.append(name)
        if len(suggestions) >= limit:
            break
    return suggestions
