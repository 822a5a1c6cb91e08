"""
Readiness classifier: interprets a storyteller's free-text reply to
"are you ready?" as yes / no / unclear.

Pluggable provider, selected by READINESS_CLASSIFIER:
- keyword: deterministic matching on normalized text (English + Hindi).
- openai: asks a small model; falls back to keyword matching on any failure.

The raw label is what gets stored in Trial.last_readiness_response.
"""
import logging
import re
from functools import lru_cache

from django.conf import settings

logger = logging.getLogger(__name__)

YES = "yes"
NO = "no"
UNCLEAR = "unclear"

OUTCOMES = (YES, NO, UNCLEAR)

# Quick-reply button texts from the readiness prompt, matched exactly
_YES_BUTTONS = {
    "yes, let's begin", "yes let's begin", "yes, lets begin", "yes lets begin",
    "yes, let us begin", "हाँ, शुरू करते हैं", "हाँ शुरू करते हैं",
}
_LATER_BUTTONS = {"maybe later", "थोड़ी देर में"}

_NEGATIVE_WORDS = re.compile(
    r"\b(no|nope|not now|not today|not ready|not sure|later|maybe later|wait|busy|tomorrow|stop)\b"
)
_POSITIVE_WORDS = re.compile(r"\b(yes|yeah|yep|yup|sure|ready|ok|okay|begin|start|haan|ha)\b")

_HINDI_NEGATIVE = ("नहीं", "देर", "बाद में", "थोड़ी", "कल")
_HINDI_POSITIVE = ("हाँ", "हां", "शुरू", "ठीक", "तैयार", "जी")

_APOSTROPHES = re.compile(r"[‘’‛`´]")
_DASHES = re.compile(r"[–—‒]")
_SPACES = re.compile(r"\s+")


def normalize_reply(text: str | None) -> str:
    text = (text or "").strip().lower()
    text = _APOSTROPHES.sub("'", text)
    text = _DASHES.sub("-", text)
    return _SPACES.sub(" ", text)


class KeywordReadinessClassifier:
    """Exact button texts first, then negatives before positives ("not ready" is a no)."""

    name = "keyword"

    def classify(self, text: str | None) -> str:
        reply = normalize_reply(text)
        if not reply:
            return UNCLEAR
        if reply in _YES_BUTTONS:
            return YES
        if reply in _LATER_BUTTONS:
            return NO

        if _NEGATIVE_WORDS.search(reply) or any(w in reply for w in _HINDI_NEGATIVE):
            return NO
        if _POSITIVE_WORDS.search(reply) or any(w in reply for w in _HINDI_POSITIVE):
            return YES
        return UNCLEAR


CLASSIFY_PROMPT = """A storyteller was asked on WhatsApp whether they are ready to start
recording their life stories today. Classify their reply.

REPLY:
{reply}

Respond with exactly one word:
- yes: they agree to start now
- no: they decline or want to do it later
- unclear: anything else"""


class OpenAIReadinessClassifier:
    """LLM-backed classifier. Any API or parsing failure degrades to keyword matching."""

    name = "openai"

    def __init__(self, api_key: str, model: str):
        self.api_key = api_key
        self.model = model
        self.fallback = KeywordReadinessClassifier()

    def classify(self, text: str | None) -> str:
        if not normalize_reply(text):
            return UNCLEAR
        try:
            from openai import OpenAI

            client = OpenAI(api_key=self.api_key)
            response = client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": CLASSIFY_PROMPT.format(reply=text.strip())}],
                temperature=0,
                max_tokens=3,
            )
            label = response.choices[0].message.content.strip().lower().strip(".")
            if label in OUTCOMES:
                return label
            logger.warning("Readiness classifier returned unexpected label %r; using keywords", label)
        except Exception as e:
            logger.error("OpenAI readiness classification failed: %s", e)
        return self.fallback.classify(text)


@lru_cache(maxsize=1)
def get_readiness_classifier():
    if settings.READINESS_CLASSIFIER == "openai" and settings.OPENAI_API_KEY:
        return OpenAIReadinessClassifier(settings.OPENAI_API_KEY, settings.OPENAI_MODEL)
    return KeywordReadinessClassifier()
