from pydantic import BaseModel, Field, field_validator
from typing import Any, Literal, Optional

from .engine.identity import normalize_username

MOOD_LABELS = {1: "Struggling", 2: "Low", 3: "Okay", 4: "Good", 5: "Great"}

JOURNAL_PROMPTS = [
    "What's one thing you're grateful for today?",
    "How did you take care of yourself today?",
    "What's something that made you smile recently?",
    "What's a challenge you overcame this week?",
    "Describe a moment of peace you experienced.",
    "What would you tell your past self?",
    "What are you looking forward to?",
    "What's something you learned about yourself?",
    "Describe a kind act you witnessed or did.",
    "What's one thing you want to let go of?",
]

REACTION_ACTIONS = ("hug", "unhug", "highFive", "unhighFive")


def _non_blank(v: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError("must not be empty")
    return v


# ── Auth ──────────────────────────────────────────────────────────────────────

class RegisterOptionsRequest(BaseModel):
    username: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        return normalize_username(v)


class CredentialResponse(BaseModel):
    """Browser PublicKeyCredential JSON, passed through to py_webauthn."""
    credential: dict[str, Any]


# ── Posts ─────────────────────────────────────────────────────────────────────

class PostCreate(BaseModel):
    content: str = Field(max_length=5000)
    tags: list[str] = []
    post_type: str = "vent"
    model_config = {"extra": "ignore"}

    @field_validator("content")
    @classmethod
    def validate_content(cls, v):
        return _non_blank(v)

    @field_validator("post_type")
    @classmethod
    def coerce_post_type(cls, v):
        # anything that isn't a flex is a vent
        return "flex" if v == "flex" else "vent"

    @field_validator("tags")
    @classmethod
    def default_tags(cls, v):
        return v or ["General"]


class PostPatch(BaseModel):
    action: str
    content: Optional[str] = Field(None, max_length=5000)
    tags: Optional[list[str]] = None


class CommentCreate(BaseModel):
    content: str = Field(max_length=1000)

    @field_validator("content")
    @classmethod
    def validate_content(cls, v):
        return _non_blank(v)


class CommentPatch(BaseModel):
    comment_id: str = Field(min_length=1)
    action: Literal["like", "unlike"]


# ── Journal / mood ────────────────────────────────────────────────────────────

class JournalCreate(BaseModel):
    content: str = Field(max_length=10000)
    mood: Optional[int] = Field(None, ge=1, le=5)
    prompt: Optional[str] = Field(None, max_length=500)

    @field_validator("content")
    @classmethod
    def validate_content(cls, v):
        return _non_blank(v)


class JournalPatch(BaseModel):
    content: Optional[str] = Field(None, max_length=10000)
    mood: Optional[int] = Field(None, ge=1, le=5)


class MoodCreate(BaseModel):
    mood: int = Field(ge=1, le=5)
    note: Optional[str] = Field(None, max_length=500)


# ── Chat ──────────────────────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    message: str = Field(max_length=4000)
    summary: Optional[str] = Field(None, max_length=4000)

    @field_validator("message")
    @classmethod
    def validate_message(cls, v):
        return _non_blank(v)
