"""
Anonymous identity rules. Pure functions, no DB access.
"""
import re
import secrets

USERNAME_RE = re.compile(r"^[a-z0-9_]+$")

USERNAME_MIN = 2
USERNAME_MAX = 20
MAX_TAG_ATTEMPTS = 100


def normalize_username(raw: str) -> str:
    """
    Strip and lower-case a chosen username, raising ValueError when it
    falls outside 2-20 chars of [a-z0-9_].
    """
    username = (raw or "").strip().lower()
    if not USERNAME_MIN <= len(username) <= USERNAME_MAX:
        raise ValueError(f"Username must be {USERNAME_MIN}-{USERNAME_MAX} characters")
    if not USERNAME_RE.match(username):
        raise ValueError("Username can only contain letters, numbers, and underscores")
    return username


def random_discriminator() -> str:
    return str(1000 + secrets.randbelow(9000))


def make_full_tag(username: str, discriminator: str) -> str:
    return f"{username}#{discriminator}"


def candidate_tags(username: str, attempts: int = MAX_TAG_ATTEMPTS):
    """Yield (discriminator, full_tag) pairs to try, one random draw each."""
    for _ in range(attempts):
        discriminator = random_discriminator()
        yield discriminator, make_full_tag(username, discriminator)
