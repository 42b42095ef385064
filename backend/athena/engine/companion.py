"""
Athena, the AI companion. Thin wrapper over OpenAI chat completions.

Every call is best-effort: upstream errors are logged and replaced with a
static fallback, never raised to the request handler.
"""
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from functools import lru_cache

from openai import OpenAI

from ..config import get_settings

logger = logging.getLogger(__name__)

VENT_INSTRUCTION = """
You are Athena, a compassionate AI companion on a mental health support platform.
You're responding to someone who is VENTING - sharing struggles, frustrations, or difficult emotions.

Tone: warm, gentle, validating. Like a wise friend who truly listens without judgment.

Structure:
1. Validate (1-2 sentences): acknowledge their feelings.
2. Gentle perspective (1-2 sentences): a soft reframe or insight.
3. Small steps (2-3 bullets): concrete, gentle actions they can take right now.

Rules: use **bold** for key phrases, stay under 120 words, never minimize their feelings.
If they mention self-harm or suicide, gently include: "If you're in crisis, please reach out to 988 (Suicide & Crisis Lifeline)".
"""

FLEX_INSTRUCTION = """
You are Athena, an enthusiastic AI companion on a mental health support platform.
You're responding to someone who is FLEXING - celebrating a win, achievement, or positive moment.

Structure:
1. Celebrate (1-2 sentences): match their energy.
2. Amplify (1-2 sentences): why this matters and what it says about them.
3. Encourage (1-2 bullets): how to keep the momentum going.

Rules: use **bold** for emphasis, at most 1-2 emojis, stay under 100 words, be genuine.
"""

JOURNAL_INSTRUCTION = """
You are Athena, a gentle companion reading someone's private journal entry.
Reply in 2-4 sentences: reflect back what you noticed, validate it, and offer one
kind question or thought to carry forward. No lists, no advice dumps, under 80 words.
"""

CHAT_INSTRUCTION = """
You are Athena, a compassionate AI companion on a mental health support platform.
You're having a 1-on-1 conversation with someone who needs support.

Listen actively and validate feelings, ask thoughtful follow-up questions, offer gentle
reframes and small actionable coping strategies. Keep replies conversational and
usually under 100 words.
If someone indicates crisis or self-harm, gently include crisis resources (988 Lifeline).
"""

MODERATION_INSTRUCTION = """
You are a content moderator for a mental health support forum. Identify content that may
be harmful while allowing genuine emotional expression.

Flag: explicit self-harm method descriptions, graphic violence, severe hate speech or
bullying, dangerous health misinformation.
Allow: sadness, anger, frustration, venting, recovery stories, asking for help.

Return ONLY JSON:
{"shouldBlur": boolean, "reason": string or null, "severity": "none" | "low" | "medium" | "high"}

Err on allowing expression. Only blur genuinely harmful content.
"""

SUMMARY_INSTRUCTION = """
Maintain a running summary of a support conversation in at most 3 sentences.
Keep the person's main concerns, feelings and anything they asked to remember.
Return only the summary text.
"""

VENT_FALLBACK = "I hear you. Your feelings are valid, and you're not alone in this."
FLEX_FALLBACK = "This is wonderful! Every win matters. Keep celebrating yourself! ✨"
JOURNAL_FALLBACK = "Thank you for writing this down. Taking a moment to reflect is an act of care for yourself."
CHAT_FALLBACK = "I'm having trouble connecting right now. Could you try again?"
CHAT_EMPTY_FALLBACK = "I'm listening... please continue."

SEVERITIES = ("none", "low", "medium", "high")
JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class ModerationResult:
    is_blurred: bool = False
    reason: str | None = None
    severity: str = "none"

    def to_dict(self) -> dict:
        return {"is_blurred": self.is_blurred, "reason": self.reason, "severity": self.severity}


def parse_moderation(text: str) -> ModerationResult:
    """Pull the first {...} block out of a model reply; anything unreadable passes."""
    m = JSON_BLOCK_RE.search(text or "")
    if not m:
        return ModerationResult()
    try:
        parsed = json.loads(m.group(0))
    except json.JSONDecodeError:
        return ModerationResult()
    if not isinstance(parsed, dict):
        return ModerationResult()
    severity = parsed.get("severity")
    return ModerationResult(
        is_blurred=parsed.get("shouldBlur") is True,
        reason=parsed.get("reason") or None,
        severity=severity if severity in SEVERITIES else "none",
    )


@dataclass
class ChatConversation:
    """One user's running conversation with Athena. Turns are sent one at a time."""
    companion: "Companion"
    messages: list[dict] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def send(self, message: str) -> str:
        with self._lock:
            history = self.messages + [{"role": "user", "content": message}]
            try:
                reply = self.companion.complete(CHAT_INSTRUCTION, history)
            except Exception as e:
                logger.error("Chat error: %s", e)
                return CHAT_FALLBACK
            if not reply:
                return CHAT_EMPTY_FALLBACK
            self.messages = history + [{"role": "assistant", "content": reply}]
            return reply


class Companion:
    def __init__(self, client: OpenAI | None = None, model: str | None = None):
        self._client = client
        self.model = model or get_settings().openai_model

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            api_key = get_settings().openai_api_key
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY is not configured")
            self._client = OpenAI(api_key=api_key)
        return self._client

    def complete(self, instruction: str, messages: list[dict]) -> str:
        res = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": instruction}, *messages],
        )
        return (res.choices[0].message.content or "").strip()

    def athena_response(self, content: str, tags: list[str], post_type: str = "vent") -> str:
        if post_type == "flex":
            instruction, fallback = FLEX_INSTRUCTION, FLEX_FALLBACK
            context = f'Someone is celebrating: "{content}" (Tags: {", ".join(tags)})'
        else:
            instruction, fallback = VENT_INSTRUCTION, VENT_FALLBACK
            context = f'Someone is venting: "{content}" (Tags: {", ".join(tags)})'
        try:
            return self.complete(instruction, [{"role": "user", "content": context}]) or fallback
        except Exception as e:
            logger.error("Athena response error: %s", e)
            return fallback

    def moderate(self, content: str) -> ModerationResult:
        try:
            text = self.complete(MODERATION_INSTRUCTION, [{"role": "user", "content": f'Analyze this post:\n\n"{content}"'}])
        except Exception as e:
            logger.error("Moderation error: %s", e)
            return ModerationResult()
        return parse_moderation(text)

    def journal_response(self, content: str, prompt: str | None, mood_label: str) -> str:
        parts = [f"Mood: {mood_label}"]
        if prompt:
            parts.append(f"Prompt: {prompt}")
        parts.append(f'Entry: "{content}"')
        try:
            return self.complete(JOURNAL_INSTRUCTION, [{"role": "user", "content": "\n".join(parts)}]) or JOURNAL_FALLBACK
        except Exception as e:
            logger.error("Journal response error: %s", e)
            return JOURNAL_FALLBACK

    def start_chat(self) -> ChatConversation:
        return ChatConversation(companion=self)

    def summarize(self, previous_summary: str, message: str, response: str) -> str:
        """Fold one exchange into the running summary; falls back to the old summary."""
        context = (
            f"Previous summary: {previous_summary or '(none)'}\n\n"
            f"User: {message}\nAthena: {response}"
        )
        try:
            return self.complete(SUMMARY_INSTRUCTION, [{"role": "user", "content": context}]) or previous_summary
        except Exception as e:
            logger.error("Summary error: %s", e)
            return previous_summary


@lru_cache(maxsize=1)
def get_companion() -> Companion:
    return Companion()
