"""
Athena — FastAPI backend
"""
import logging
import random
import re
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.sessions import SessionMiddleware
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

from .chat_cache import ChatSessionCache, get_chat_cache
from .config import get_settings
from .db import (
    TagTakenError, VersionConflict,
    get_client, get_user, tag_exists, get_user_by_credential_id, create_user,
    update_user_versioned, save_challenge, take_challenge, clear_challenges,
    list_posts, list_posts_by_author, get_post, insert_post, update_post, delete_post,
    update_post_versioned,
    list_journal_entries, get_journal_entry, get_journal_entry_since,
    insert_journal_entry, update_journal_entry, delete_journal_entry,
    list_mood_entries, get_mood_entry_since, insert_mood_entry, update_mood_entry,
)
from .engine import passkeys
from .engine.companion import Companion, get_companion
from .engine.identity import candidate_tags
from .engine.passkeys import AuthenticationFailed, RegistrationFailed, StoredCredential
from .engine.streak import StreakState, StreakUpdate, apply_activity, displayed_state, streak_summary
from .models import (
    JOURNAL_PROMPTS, MOOD_LABELS, REACTION_ACTIONS,
    RegisterOptionsRequest, CredentialResponse,
    PostCreate, PostPatch, CommentCreate, CommentPatch,
    JournalCreate, JournalPatch, MoodCreate, ChatMessage,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3
SESSION_COOKIE = "athena_session"
FRACTION_RE = re.compile(r"\.(\d+)")

settings = get_settings()
limiter = Limiter(key_func=get_remote_address)
app = FastAPI(title="Athena API")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret.get_secret_value(),
    session_cookie=SESSION_COOKIE,
    max_age=settings.session_max_age,
    same_site="lax",
    https_only=settings.is_production,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
def health():
    try:
        db = get_client()
        db.table("users").select("full_tag").limit(1).execute()
        return {"status": "ok", "db": "ok"}
    except Exception as e:
        logger.error("Health check DB failure: %s", e)
        raise HTTPException(status_code=503, detail="DB unavailable")


# ── Session ───────────────────────────────────────────────────────────────────

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _day_start(moment: datetime) -> datetime:
    return datetime(moment.year, moment.month, moment.day, tzinfo=timezone.utc)


def _parse_timestamp(ts: str | None) -> datetime | None:
    """
    Parse a PostgREST timestamp. Postgres trims trailing zeros from the
    fraction; it is padded back to six digits for fromisoformat.
    """
    if not ts:
        return None
    text = FRACTION_RE.sub(lambda m: "." + m.group(1).ljust(6, "0")[:6], ts.replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Unparseable timestamp: %r", ts)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _session_id(request: Request) -> str:
    sid = request.session.get("sid")
    if not sid:
        sid = secrets.token_urlsafe(24)
        request.session["sid"] = sid
    return sid


def _sign_in(request: Request, user: dict) -> dict:
    session_user = {
        "full_tag": user["full_tag"],
        "username": user["username"],
        "role": user.get("role") or "user",
    }
    request.session["user"] = session_user
    return session_user


def require_user(request: Request) -> dict:
    user = request.session.get("user")
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


# ── Challenges ────────────────────────────────────────────────────────────────

def _issue_challenge(db, request: Request, purpose: str, challenge: bytes, extra: dict | None = None) -> None:
    expires_at = _now() + timedelta(seconds=get_settings().challenge_ttl_seconds)
    save_challenge(db, _session_id(request), purpose, bytes_to_base64url(challenge), expires_at, extra)


def _consume_challenge(db, request: Request, purpose: str) -> dict | None:
    """Returns the pending challenge row, or None if there is none or it expired."""
    sid = request.session.get("sid")
    if not sid:
        return None
    row = take_challenge(db, sid, purpose)
    if not row:
        return None
    expires_at = _parse_timestamp(row.get("expires_at"))
    if expires_at is None or expires_at < _now():
        return None
    return row


# ── Registration ──────────────────────────────────────────────────────────────

@app.post("/api/auth/register/options")
@limiter.limit("10/minute")
def register_options(request: Request, body: RegisterOptionsRequest):
    db = get_client()
    discriminator, full_tag = _allocate_tag(db, body.username)
    user_handle = secrets.token_bytes(16)
    options, challenge = passkeys.registration_options(get_settings(), body.username, user_handle)
    _issue_challenge(db, request, "register", challenge, {
        "full_tag": full_tag,
        "username": body.username,
        "discriminator": discriminator,
        "user_handle": bytes_to_base64url(user_handle),
    })
    return {
        "options": options,
        "username": body.username,
        "discriminator": discriminator,
        "full_tag": full_tag,
    }


@app.post("/api/auth/register/verify", status_code=201)
@limiter.limit("10/minute")
def register_verify(request: Request, body: CredentialResponse):
    db = get_client()
    pending = _consume_challenge(db, request, "register")
    if not pending:
        raise HTTPException(status_code=400, detail="Registration session expired. Please try again.")

    try:
        credential = passkeys.verify_registration(
            get_settings(), body.credential, base64url_to_bytes(pending["challenge"])
        )
    except RegistrationFailed:
        raise HTTPException(status_code=400, detail="Registration verification failed")

    full_tag = pending["full_tag"]
    if tag_exists(db, full_tag):
        raise HTTPException(status_code=409, detail="This username tag is already taken. Please try again.")
    try:
        user = create_user(db, {
            "full_tag": full_tag,
            "username": pending["username"],
            "discriminator": pending["discriminator"],
            "user_handle": pending["user_handle"],
            "role": "user",
            "credentials": [credential.to_row()],
            "current_streak": 0,
            "longest_streak": 0,
            "last_active_date": None,
        })
    except TagTakenError:
        raise HTTPException(status_code=409, detail="This username tag is already taken. Please try again.")

    session_user = _sign_in(request, user)
    logger.info("User registered: %s", full_tag)
    return {"status": "registered", **session_user}


# ── Login ─────────────────────────────────────────────────────────────────────

@app.post("/api/auth/login/options")
@limiter.limit("20/minute")
def login_options(request: Request):
    db = get_client()
    options, challenge = passkeys.authentication_options(get_settings())
    _issue_challenge(db, request, "login", challenge)
    return {"options": options}


@app.post("/api/auth/login/verify")
@limiter.limit("20/minute")
def login_verify(request: Request, body: CredentialResponse):
    db = get_client()
    pending = _consume_challenge(db, request, "login")
    if not pending:
        raise HTTPException(status_code=400, detail="Login session expired. Please try again.")

    try:
        credential_id = passkeys.credential_id_from_response(body.credential)
    except AuthenticationFailed:
        raise HTTPException(status_code=401, detail="Authentication failed")

    user = get_user_by_credential_id(db, credential_id)
    stored = _find_credential(user, credential_id) if user else None
    if stored is None:
        raise HTTPException(status_code=404, detail="Passkey not recognized. Please register first.")

    try:
        new_count = passkeys.verify_authentication(
            get_settings(), body.credential, base64url_to_bytes(pending["challenge"]), stored
        )
        user = _store_sign_count(db, user, credential_id, new_count)
    except AuthenticationFailed:
        raise HTTPException(status_code=401, detail="Authentication failed")
    except VersionConflict:
        raise HTTPException(status_code=409, detail="Login conflicted with another request. Please try again.")

    session_user = _sign_in(request, user)
    logger.info("User signed in: %s", user["full_tag"])
    return {"status": "ok", **session_user}


@app.get("/api/auth/me")
def me(user: dict = Depends(require_user)):
    return user


@app.post("/api/auth/logout")
def logout(request: Request, chat_cache: ChatSessionCache = Depends(get_chat_cache)):
    user = request.session.get("user")
    sid = request.session.get("sid")
    if user:
        chat_cache.discard(user["full_tag"])
    if sid:
        clear_challenges(get_client(), sid)
    request.session.clear()
    return {"status": "logged_out"}


# ── Streak ────────────────────────────────────────────────────────────────────

@app.get("/api/streak")
def get_streak(user: dict = Depends(require_user)):
    db = get_client()
    user_doc = get_user(db, user["full_tag"])
    if not user_doc:
        raise HTTPException(status_code=404, detail="User not found")
    return streak_summary(_streak_state(user_doc), _now())


@app.post("/api/streak")
def update_streak(user: dict = Depends(require_user)):
    db = get_client()
    try:
        update = _record_activity(db, user["full_tag"])
    except VersionConflict:
        raise HTTPException(status_code=409, detail="Streak update conflicted. Please try again.")
    if update is None:
        raise HTTPException(status_code=404, detail="User not found")
    return _streak_payload(update)


# ── Posts ─────────────────────────────────────────────────────────────────────

@app.get("/api/posts")
def get_posts(
    tag: str | None = None,
    post_type: str | None = Query(None, alias="type"),
    limit: int = Query(20, ge=1, le=100),
    skip: int = Query(0, ge=0),
):
    db = get_client()
    tag_filter = tag if tag and tag != "All" else None
    type_filter = post_type if post_type in ("vent", "flex") else None
    posts, total = list_posts(db, tag_filter, type_filter, limit, skip)
    return {"posts": posts, "total": total, "has_more": skip + len(posts) < total}


@app.post("/api/posts", status_code=201)
@limiter.limit("30/minute")
def create_post(
    request: Request,
    body: PostCreate,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_user),
    companion: Companion = Depends(get_companion),
):
    db = get_client()
    moderation = companion.moderate(body.content)
    post = insert_post(db, {
        "author_tag": user["full_tag"],
        "content": body.content,
        "post_type": body.post_type,
        "tags": body.tags,
        "reactions": {"hugs": 0, "hugged_by": [], "high_fives": 0, "high_fived_by": []},
        "moderation": moderation.to_dict(),
        "athena_response": None,
        "is_athena_thinking": True,
        "comments": [],
    })
    background_tasks.add_task(
        _write_athena_reply, post["id"], body.content, body.tags, body.post_type, companion
    )
    update = _touch_streak(db, user["full_tag"])
    if moderation.is_blurred:
        logger.info("Post %s blurred (%s)", post["id"], moderation.severity)
    return {**post, "streak": _streak_payload(update) if update else None}


@app.get("/api/posts/{post_id}")
def get_single_post(post_id: str):
    post = get_post(get_client(), post_id)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    return post


@app.patch("/api/posts/{post_id}")
def patch_post(
    post_id: str,
    body: PostPatch,
    user: dict = Depends(require_user),
    companion: Companion = Depends(get_companion),
):
    db = get_client()
    post = get_post(db, post_id)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")

    if body.action in REACTION_ACTIONS:
        updates = _mutate_post(db, post_id, post, lambda p: {
            "reactions": _apply_reaction(p.get("reactions") or {}, body.action, user["full_tag"]),
        })
        reactions = updates["reactions"]
        return {
            "reactions": reactions,
            "has_hugged": user["full_tag"] in reactions["hugged_by"],
            "has_high_fived": user["full_tag"] in reactions["high_fived_by"],
        }

    if body.action == "edit":
        if post["author_tag"] != user["full_tag"]:
            raise HTTPException(status_code=403, detail="Not authorized to edit this post")
        content = (body.content or "").strip()
        if not content:
            raise HTTPException(status_code=400, detail="Content is required")
        updates: dict[str, Any] = {
            "content": content,
            "moderation": companion.moderate(content).to_dict(),
            "updated_at": _now().isoformat(),
        }
        if body.tags is not None:
            updates["tags"] = body.tags
        return update_post(db, post_id, updates) or {**post, **updates}

    raise HTTPException(status_code=400, detail="Invalid action")


@app.delete("/api/posts/{post_id}")
def remove_post(post_id: str, user: dict = Depends(require_user)):
    db = get_client()
    post = get_post(db, post_id)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    if post["author_tag"] != user["full_tag"]:
        raise HTTPException(status_code=403, detail="Not authorized to delete this post")
    delete_post(db, post_id)
    return {"status": "deleted"}


@app.post("/api/posts/{post_id}/comments", status_code=201)
@limiter.limit("30/minute")
def add_comment(
    request: Request,
    post_id: str,
    body: CommentCreate,
    user: dict = Depends(require_user),
    companion: Companion = Depends(get_companion),
):
    db = get_client()
    post = get_post(db, post_id)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")

    comment = {
        "id": str(uuid.uuid4()),
        "author_tag": user["full_tag"],
        "content": body.content,
        "likes": 0,
        "liked_by": [],
        "moderation": companion.moderate(body.content).to_dict(),
        "created_at": _now().isoformat(),
    }
    _mutate_post(db, post_id, post, lambda p: {"comments": list(p.get("comments") or []) + [comment]})
    return comment


@app.patch("/api/posts/{post_id}/comments")
def like_comment(post_id: str, body: CommentPatch, user: dict = Depends(require_user)):
    db = get_client()
    post = get_post(db, post_id)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")

    updates = _mutate_post(db, post_id, post, lambda p: {
        "comments": _toggle_like(p.get("comments") or [], body.comment_id, body.action, user["full_tag"]),
    })
    target = next(c for c in updates["comments"] if c.get("id") == body.comment_id)
    return {"likes": target["likes"], "has_liked": user["full_tag"] in target["liked_by"]}


# ── Journal ───────────────────────────────────────────────────────────────────

@app.get("/api/journal")
def get_journal(
    limit: int = Query(20, ge=1, le=100),
    skip: int = Query(0, ge=0),
    user: dict = Depends(require_user),
):
    db = get_client()
    entries, total = list_journal_entries(db, user["full_tag"], limit, skip)
    return {
        "entries": entries,
        "total": total,
        "has_more": skip + len(entries) < total,
        "today_entry": get_journal_entry_since(db, user["full_tag"], _day_start(_now())),
        "suggested_prompt": random.choice(JOURNAL_PROMPTS),
    }


@app.post("/api/journal", status_code=201)
@limiter.limit("30/minute")
def create_journal_entry(
    request: Request,
    body: JournalCreate,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_user),
    companion: Companion = Depends(get_companion),
):
    db = get_client()
    entry = insert_journal_entry(db, {
        "user_tag": user["full_tag"],
        "content": body.content,
        "mood": body.mood,
        "prompt": body.prompt,
        "athena_response": None,
    })
    background_tasks.add_task(
        _write_journal_reply, entry["id"], body.content, body.prompt, body.mood, companion
    )
    update = _touch_streak(db, user["full_tag"])
    return {**entry, "streak": _streak_payload(update) if update else None}


@app.patch("/api/journal/{entry_id}")
def patch_journal_entry(entry_id: str, body: JournalPatch, user: dict = Depends(require_user)):
    db = get_client()
    entry = _owned_journal_entry(db, entry_id, user)
    updates: dict[str, Any] = {}
    if body.content and body.content.strip():
        updates["content"] = body.content.strip()
    if "mood" in body.model_fields_set:
        updates["mood"] = body.mood
    if not updates:
        return entry
    updates["updated_at"] = _now().isoformat()
    return update_journal_entry(db, entry_id, updates) or {**entry, **updates}


@app.delete("/api/journal/{entry_id}")
def remove_journal_entry(entry_id: str, user: dict = Depends(require_user)):
    db = get_client()
    _owned_journal_entry(db, entry_id, user)
    delete_journal_entry(db, entry_id)
    return {"status": "deleted"}


# ── Mood ──────────────────────────────────────────────────────────────────────

@app.get("/api/mood")
def get_moods(days: int = Query(30, ge=1, le=365), user: dict = Depends(require_user)):
    db = get_client()
    today_start = _day_start(_now())
    entries = list_mood_entries(db, user["full_tag"], today_start - timedelta(days=days))
    today_entry = get_mood_entry_since(db, user["full_tag"], today_start)
    return {
        "entries": entries,
        "has_checked_in_today": today_entry is not None,
        "today_entry": today_entry,
    }


@app.post("/api/mood")
def check_in_mood(body: MoodCreate, user: dict = Depends(require_user)):
    db = get_client()
    existing = get_mood_entry_since(db, user["full_tag"], _day_start(_now()))
    if existing:
        updates = {"mood": body.mood, "note": body.note}
        entry = update_mood_entry(db, existing["id"], updates) or {**existing, **updates}
        return {"status": "updated", "entry": entry}

    entry = insert_mood_entry(db, {"user_tag": user["full_tag"], "mood": body.mood, "note": body.note})
    update = _touch_streak(db, user["full_tag"])
    return {
        "status": "recorded",
        "entry": entry,
        "streak": _streak_payload(update) if update else None,
    }


# ── Chat ──────────────────────────────────────────────────────────────────────

@app.post("/api/chat")
@limiter.limit("30/minute")
def chat(
    request: Request,
    body: ChatMessage,
    user: dict = Depends(require_user),
    companion: Companion = Depends(get_companion),
    chat_cache: ChatSessionCache = Depends(get_chat_cache),
):
    conversation = chat_cache.get_or_create(user["full_tag"], companion.start_chat)
    if body.summary:
        message = f"[Previous conversation summary: {body.summary}]\n\nUser's new message: {body.message}"
    else:
        message = body.message
    response = conversation.send(message)
    summary = companion.summarize(body.summary or "", body.message, response)
    return {"response": response, "summary": summary, "timestamp": int(time.time() * 1000)}


@app.delete("/api/chat")
def clear_chat(user: dict = Depends(require_user), chat_cache: ChatSessionCache = Depends(get_chat_cache)):
    chat_cache.discard(user["full_tag"])
    return {"status": "cleared"}


# ── Profile ───────────────────────────────────────────────────────────────────

@app.get("/api/profile")
def get_profile(user: dict = Depends(require_user)):
    db = get_client()
    user_doc = get_user(db, user["full_tag"]) or {}
    posts = list_posts_by_author(db, user["full_tag"], limit=50)
    moods = list_mood_entries(db, user["full_tag"], _now() - timedelta(days=30))
    journal, _ = list_journal_entries(db, user["full_tag"], limit=30, skip=0)
    streak = displayed_state(_streak_state(user_doc), _now())

    average_mood = round(sum(m["mood"] for m in moods) / len(moods), 1) if moods else None
    return {
        "user": {**user, "created_at": user_doc.get("created_at")},
        "posts": posts,
        "mood_entries": moods,
        "journal_entries": journal,
        "stats": {
            "total_posts": len(posts),
            "total_hugs": sum((p.get("reactions") or {}).get("hugs", 0) for p in posts),
            "total_high_fives": sum((p.get("reactions") or {}).get("high_fives", 0) for p in posts),
            "total_journal_entries": len(journal),
            "total_mood_checkins": len(moods),
            "average_mood": average_mood,
            "current_streak": streak.current_streak,
            "longest_streak": streak.longest_streak,
        },
    }


# ── Helpers ───────────────────────────────────────────────────────────────────

def _allocate_tag(db, username: str) -> tuple[str, str]:
    """Draw discriminators until one is free. The insert re-checks later."""
    for discriminator, full_tag in candidate_tags(username):
        if not tag_exists(db, full_tag):
            return discriminator, full_tag
    raise HTTPException(status_code=409, detail="Unable to generate unique tag. Try a different username.")


def _find_credential(user: dict, credential_id: str) -> StoredCredential | None:
    for row in user.get("credentials") or []:
        if row.get("credential_id") == credential_id:
            return StoredCredential.from_row(row)
    return None


def _store_sign_count(db, user: dict, credential_id: str, new_count: int) -> dict:
    """
    Versioned write of the new counter. On conflict re-read and re-check, so
    two logins racing with the same assertion cannot both pass.
    """
    for _ in range(MAX_WRITE_ATTEMPTS):
        credentials = [StoredCredential.from_row(c) for c in user.get("credentials") or []]
        for cred in credentials:
            if cred.credential_id == credential_id:
                passkeys.check_sign_count(cred.sign_count, new_count)
                cred.sign_count = new_count
        try:
            return update_user_versioned(
                db, user["full_tag"], user.get("version") or 1,
                {"credentials": [c.to_row() for c in credentials]},
            )
        except VersionConflict:
            user = get_user(db, user["full_tag"])
            if user is None:
                raise AuthenticationFailed("Authentication failed")
    raise VersionConflict(user["full_tag"])


def _streak_state(user_doc: dict) -> StreakState:
    return StreakState(
        current_streak=user_doc.get("current_streak") or 0,
        longest_streak=user_doc.get("longest_streak") or 0,
        last_active_date=_parse_timestamp(user_doc.get("last_active_date")),
    )


def _record_activity(db, full_tag: str) -> StreakUpdate | None:
    """Apply one qualifying activity to the stored streak (CAS, retried)."""
    user_doc = get_user(db, full_tag)
    if not user_doc:
        return None
    for _ in range(MAX_WRITE_ATTEMPTS):
        update = apply_activity(_streak_state(user_doc), _now())
        if not update.changed:
            return update
        try:
            update_user_versioned(db, full_tag, user_doc.get("version") or 1, {
                "current_streak": update.state.current_streak,
                "longest_streak": update.state.longest_streak,
                "last_active_date": update.state.last_active_date.isoformat(),
            })
        except VersionConflict:
            user_doc = get_user(db, full_tag)
            if not user_doc:
                return None
            continue
        if update.milestone:
            logger.info("Streak milestone %d reached by %s", update.milestone, full_tag)
        return update
    raise VersionConflict(full_tag)


def _touch_streak(db, full_tag: str) -> StreakUpdate | None:
    """Streak bookkeeping riding along another write; never fails that write."""
    try:
        return _record_activity(db, full_tag)
    except VersionConflict:
        logger.warning("Streak update for %s gave up after %d attempts", full_tag, MAX_WRITE_ATTEMPTS)
        return None
    except Exception as e:
        logger.error("Streak update for %s failed: %s", full_tag, e)
        return None


def _streak_payload(update: StreakUpdate) -> dict:
    return {
        "current_streak": update.state.current_streak,
        "longest_streak": update.state.longest_streak,
        "celebrate_milestone": update.celebrate_milestone,
        "milestone": update.milestone or 0,
    }


def _apply_reaction(reactions: dict, action: str, full_tag: str) -> dict:
    """Reactions are per-user toggles; counts always mirror the lists."""
    hugged_by = list(reactions.get("hugged_by") or [])
    high_fived_by = list(reactions.get("high_fived_by") or [])
    if action == "hug" and full_tag not in hugged_by:
        hugged_by.append(full_tag)
    elif action == "unhug":
        hugged_by = [t for t in hugged_by if t != full_tag]
    elif action == "highFive" and full_tag not in high_fived_by:
        high_fived_by.append(full_tag)
    elif action == "unhighFive":
        high_fived_by = [t for t in high_fived_by if t != full_tag]
    return {
        "hugs": len(hugged_by),
        "hugged_by": hugged_by,
        "high_fives": len(high_fived_by),
        "high_fived_by": high_fived_by,
    }


def _mutate_post(db, post_id: str, post: dict, build) -> dict:
    """
    Versioned read-modify-write of a post's jsonb fields. build(post) returns
    the column updates; on conflict the post is re-read and build runs again.
    """
    for _ in range(MAX_WRITE_ATTEMPTS):
        updates = build(post)
        try:
            update_post_versioned(db, post_id, post.get("version") or 1, updates)
            return updates
        except VersionConflict:
            post = get_post(db, post_id)
            if not post:
                raise HTTPException(status_code=404, detail="Post not found")
    raise HTTPException(status_code=409, detail="Post was updated by someone else. Please try again.")


def _toggle_like(comments: list[dict], comment_id: str, action: str, full_tag: str) -> list[dict]:
    comments = [dict(c) for c in comments]
    target = next((c for c in comments if c.get("id") == comment_id), None)
    if target is None:
        raise HTTPException(status_code=404, detail="Comment not found")
    liked_by = list(target.get("liked_by") or [])
    if action == "like" and full_tag not in liked_by:
        liked_by.append(full_tag)
    elif action == "unlike":
        liked_by = [t for t in liked_by if t != full_tag]
    target["liked_by"] = liked_by
    target["likes"] = len(liked_by)
    return comments


def _owned_journal_entry(db, entry_id: str, user: dict) -> dict:
    entry = get_journal_entry(db, entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Entry not found")
    if entry["user_tag"] != user["full_tag"]:
        raise HTTPException(status_code=403, detail="Not authorized")
    return entry


def _write_athena_reply(post_id: str, content: str, tags: list[str], post_type: str, companion: Companion) -> None:
    reply = companion.athena_response(content, tags, post_type)
    try:
        update_post(get_client(), post_id, {"athena_response": reply, "is_athena_thinking": False})
    except Exception as e:
        logger.error("Could not store Athena reply for post %s: %s", post_id, e)


def _write_journal_reply(entry_id: str, content: str, prompt: str | None, mood: int | None,
                         companion: Companion) -> None:
    reply = companion.journal_response(content, prompt, MOOD_LABELS.get(mood, "unspecified"))
    try:
        update_journal_entry(get_client(), entry_id, {"athena_response": reply})
    except Exception as e:
        logger.error("Could not store companion reply for journal entry %s: %s", entry_id, e)
