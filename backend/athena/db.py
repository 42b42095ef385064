import os
import json
import logging
from datetime import datetime
from functools import lru_cache
from supabase import create_client, Client

logger = logging.getLogger(__name__)


class TagTakenError(Exception):
    """Insert hit the unique constraint on users.full_tag."""


class VersionConflict(Exception):
    """A versioned write found the row already moved on."""


@lru_cache(maxsize=1)
def get_client() -> Client:
    url = os.environ["SUPABASE_URL"]
    key = os.environ["SUPABASE_SERVICE_KEY"]
    return create_client(url, key)


def is_unique_violation(exc: Exception) -> bool:
    err_str = str(exc).lower()
    return "duplicate" in err_str or "unique" in err_str or "23505" in err_str


# ── Users ─────────────────────────────────────────────────────────────────────

def get_user(db: Client, full_tag: str) -> dict | None:
    res = db.table("users").select("*").eq("full_tag", full_tag).execute()
    return res.data[0] if res.data else None


def tag_exists(db: Client, full_tag: str) -> bool:
    res = db.table("users").select("full_tag").eq("full_tag", full_tag).limit(1).execute()
    return bool(res.data)


def get_user_by_credential_id(db: Client, credential_id: str) -> dict | None:
    # jsonb containment: credentials @> [{"credential_id": ...}]
    needle = json.dumps([{"credential_id": credential_id}])
    res = db.table("users").select("*").contains("credentials", needle).limit(1).execute()
    return res.data[0] if res.data else None


def create_user(db: Client, row: dict) -> dict:
    """
    Insert a new user. The unique index on full_tag is the last word on
    races: whichever concurrent insert loses gets TagTakenError.
    """
    try:
        res = db.table("users").insert({**row, "version": 1}).execute()
    except Exception as e:
        if is_unique_violation(e):
            raise TagTakenError(row.get("full_tag")) from e
        raise
    return res.data[0] if res.data else {**row, "version": 1}


def update_user_versioned(db: Client, full_tag: str, expected_version: int, updates: dict) -> dict:
    """Compare-and-swap on users.version. Raises VersionConflict if another write got there first."""
    res = (
        db.table("users")
        .update({**updates, "version": expected_version + 1})
        .eq("full_tag", full_tag)
        .eq("version", expected_version)
        .execute()
    )
    if not res.data:
        raise VersionConflict(full_tag)
    return res.data[0]


# ── WebAuthn challenges ───────────────────────────────────────────────────────

def save_challenge(db: Client, session_id: str, purpose: str, challenge: str,
                   expires_at: datetime, extra: dict | None = None) -> None:
    """One pending challenge per session; issuing a new one replaces the old."""
    row = {
        "session_id": session_id,
        "purpose": purpose,
        "challenge": challenge,
        "expires_at": expires_at.isoformat(),
        **(extra or {}),
    }
    db.table("webauthn_challenges").upsert(row, on_conflict="session_id").execute()


def take_challenge(db: Client, session_id: str, purpose: str) -> dict | None:
    """Delete-and-return, so a challenge can be consumed at most once."""
    res = (
        db.table("webauthn_challenges")
        .delete()
        .eq("session_id", session_id)
        .eq("purpose", purpose)
        .execute()
    )
    return res.data[0] if res.data else None


def clear_challenges(db: Client, session_id: str) -> None:
    db.table("webauthn_challenges").delete().eq("session_id", session_id).execute()


def list_expired_challenges(db: Client, before: datetime) -> list[dict]:
    res = (
        db.table("webauthn_challenges")
        .select("session_id, purpose, expires_at")
        .lt("expires_at", before.isoformat())
        .execute()
    )
    return res.data or []


def purge_expired_challenges(db: Client, before: datetime) -> int:
    """Abandoned ceremonies never get consumed; sweep them. Returns rows removed."""
    res = db.table("webauthn_challenges").delete().lt("expires_at", before.isoformat()).execute()
    return len(res.data or [])


# ── Posts ─────────────────────────────────────────────────────────────────────

def list_posts(db: Client, tag: str | None, post_type: str | None,
               limit: int, skip: int) -> tuple[list[dict], int]:
    query = db.table("posts").select("*", count="exact")
    if tag:
        query = query.contains("tags", [tag])
    if post_type:
        query = query.eq("post_type", post_type)
    res = query.order("created_at", desc=True).range(skip, skip + limit - 1).execute()
    return res.data or [], res.count or 0


def list_posts_by_author(db: Client, author_tag: str, limit: int = 50) -> list[dict]:
    res = (
        db.table("posts").select("*")
        .eq("author_tag", author_tag)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return res.data or []


def get_post(db: Client, post_id: str) -> dict | None:
    res = db.table("posts").select("*").eq("id", post_id).execute()
    return res.data[0] if res.data else None


def insert_post(db: Client, row: dict) -> dict:
    res = db.table("posts").insert({**row, "version": 1}).execute()
    return res.data[0]


def update_post(db: Client, post_id: str, updates: dict) -> dict | None:
    res = db.table("posts").update(updates).eq("id", post_id).execute()
    return res.data[0] if res.data else None


def update_post_versioned(db: Client, post_id: str, expected_version: int, updates: dict) -> dict:
    """Compare-and-swap on posts.version, for read-modify-write of reactions and comments."""
    res = (
        db.table("posts")
        .update({**updates, "version": expected_version + 1})
        .eq("id", post_id)
        .eq("version", expected_version)
        .execute()
    )
    if not res.data:
        raise VersionConflict(post_id)
    return res.data[0]


def delete_post(db: Client, post_id: str) -> None:
    db.table("posts").delete().eq("id", post_id).execute()


# ── Journal ───────────────────────────────────────────────────────────────────

def list_journal_entries(db: Client, user_tag: str, limit: int, skip: int) -> tuple[list[dict], int]:
    res = (
        db.table("journal_entries").select("*", count="exact")
        .eq("user_tag", user_tag)
        .order("created_at", desc=True)
        .range(skip, skip + limit - 1)
        .execute()
    )
    return res.data or [], res.count or 0


def get_journal_entry(db: Client, entry_id: str) -> dict | None:
    res = db.table("journal_entries").select("*").eq("id", entry_id).execute()
    return res.data[0] if res.data else None


def get_journal_entry_since(db: Client, user_tag: str, since: datetime) -> dict | None:
    res = (
        db.table("journal_entries").select("*")
        .eq("user_tag", user_tag)
        .gte("created_at", since.isoformat())
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    return res.data[0] if res.data else None


def insert_journal_entry(db: Client, row: dict) -> dict:
    res = db.table("journal_entries").insert(row).execute()
    return res.data[0]


def update_journal_entry(db: Client, entry_id: str, updates: dict) -> dict | None:
    res = db.table("journal_entries").update(updates).eq("id", entry_id).execute()
    return res.data[0] if res.data else None


def delete_journal_entry(db: Client, entry_id: str) -> None:
    db.table("journal_entries").delete().eq("id", entry_id).execute()


# ── Mood ──────────────────────────────────────────────────────────────────────

def list_mood_entries(db: Client, user_tag: str, since: datetime) -> list[dict]:
    res = (
        db.table("mood_entries").select("*")
        .eq("user_tag", user_tag)
        .gte("created_at", since.isoformat())
        .order("created_at", desc=True)
        .execute()
    )
    return res.data or []


def get_mood_entry_since(db: Client, user_tag: str, since: datetime) -> dict | None:
    res = (
        db.table("mood_entries").select("*")
        .eq("user_tag", user_tag)
        .gte("created_at", since.isoformat())
        .order("created_at", desc=True)
        .limit(1)
        .execute()
    )
    return res.data[0] if res.data else None


def insert_mood_entry(db: Client, row: dict) -> dict:
    res = db.table("mood_entries").insert(row).execute()
    return res.data[0]


def update_mood_entry(db: Client, entry_id: str, updates: dict) -> dict | None:
    res = db.table("mood_entries").update(updates).eq("id", entry_id).execute()
    return res.data[0] if res.data else None
