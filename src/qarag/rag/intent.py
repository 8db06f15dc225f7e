"""Rule-based intent classification.

Rules are checked in a fixed priority order; the first intent with a
matching pattern wins. A message that mixes intents ("generate test cases
from this bug report") therefore resolves the same way every time:

  TEST_CASE_GENERATION > BUG_REPORT_FORMATTING > TEST_PLAN_CREATION
  > AUTOMATION_SUGGESTION > DOCUMENT_ANALYSIS > GENERAL_QA_QUESTION

When nothing matches and the message reads as a follow-up ("do the same for
checkout", "make it more detailed"), the intent of the most recent turn in
the lookback window is reused.
"""

from __future__ import annotations

import re

from qarag.models import ConversationTurn, Intent


def _rx(*patterns: str) -> list[re.Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# Ordered by priority. Dict order is the tie-break.
RULES: dict[Intent, list[re.Pattern[str]]] = {
    Intent.TEST_CASE_GENERATION: _rx(
        r"\btest[\s\-]?cases?\b",
        r"\btest scenarios?\b",
        r"\bgenerate (?:some |the )?tests?\b",
        r"\bwrite (?:some |the )?tests?\b",
    ),
    Intent.BUG_REPORT_FORMATTING: _rx(
        r"\bbug[\s\-]?reports?\b",
        r"\bformat (?:this |the |a |my )?bug\b",
        r"\bbug template\b",
        r"\bdefect report\b",
        r"\breport (?:a |this )?bug\b",
    ),
    Intent.TEST_PLAN_CREATION: _rx(
        r"\btest plan\b",
        r"\btest strategy\b",
        r"\btesting (?:approach|strategy)\b",
        r"\bqa plan\b",
    ),
    Intent.AUTOMATION_SUGGESTION: _rx(
        r"\bautomat(?:e|ed|ion|ing)\b",
        r"\b(?:playwright|selenium|cypress|puppeteer|webdriver)\b",
    ),
    Intent.DOCUMENT_ANALYSIS: _rx(
        r"\bexplain\b",
        r"\banaly[sz](?:e|is)\b",
        r"\bwhat does\b",
        r"\bunderstand\b",
        r"\bsummari[sz]e\b",
        r"\bsummary\b",
    ),
}

_CONTINUATION_RE = re.compile(
    r"\b(?:the same|same|again|also|too|as well|instead|another|more detail(?:ed|s)?|more)\b"
    r"|^\s*(?:and|now|then|what about|how about)\b",
    re.IGNORECASE,
)
_REFERENCE_RE = re.compile(
    r"\b(?:it|its|that|this|these|those|them|they|above|previous|earlier)\b",
    re.IGNORECASE,
)

_MAX_FOLLOW_UP_WORDS = 15


def is_follow_up(message: str) -> bool:
    """True for short messages that lean on earlier turns for meaning."""
    if len(message.split()) > _MAX_FOLLOW_UP_WORDS:
        return False
    return bool(_CONTINUATION_RE.search(message) or _REFERENCE_RE.search(message))


def resolve_query(message: str, history: list[ConversationTurn]) -> str:
    """Retrieval query for *message*.

    A follow-up that refers back with a pronoun ("explain it", "what about
    those") is extended with the most recent user question so retrieval
    lands on the same subject. Anything else is returned unchanged.
    """
    if not is_follow_up(message) or not _REFERENCE_RE.search(message):
        return message
    for turn in reversed(history):
        if turn.role == "user" and turn.content.strip():
            return f"{message}\n{turn.content}"
    return message


class IntentClassifier:
    """Deterministic, synchronous classifier. Always returns one Intent."""

    def __init__(self, lookback_turns: int = 2) -> None:
        self.lookback_turns = lookback_turns

    def classify(self, message: str, history: list[ConversationTurn] | None = None) -> Intent:
        for intent, patterns in RULES.items():
            if any(p.search(message) for p in patterns):
                return intent

        if history and is_follow_up(message):
            window = history[-self.lookback_turns :] if self.lookback_turns > 0 else []
            for turn in reversed(window):
                if turn.intent is not None:
                    return turn.intent

        return Intent.GENERAL_QA_QUESTION
