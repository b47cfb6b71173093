"""SMS reply parsing for approval requests.

Resolution order (case-insensitive):
1. Exact short forms: yes/y/1/ok approve, no/n/0 reject
2. Cancel words reject
3. Approval and rejection keywords, matched as whole words or phrases
4. If both kinds match, the direct words (yes/y/ok/sure vs no/n/nope) decide;
   if both or neither direct word is present the reply is unclear
"""

import re
from dataclasses import dataclass
from enum import StrEnum


class ReplyIntent(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    UNCLEAR = "unclear"


class ReplyConfidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class ParsedReply:
    intent: ReplyIntent
    confidence: ReplyConfidence
    text: str

    @property
    def is_decision(self) -> bool:
        return self.intent != ReplyIntent.UNCLEAR


EXACT_APPROVALS = frozenset({"yes", "y", "1", "ok"})
EXACT_REJECTIONS = frozenset({"no", "n", "0"})

APPROVAL_KEYWORDS = (
    "yes", "y", "yeah", "yep", "yup", "yas", "ya", "yea",
    "sure", "ok", "okay", "good", "great", "perfect", "sounds good",
    "approve", "approved", "book", "register", "go", "do it", "lets do it", "let's do it",
    "awesome", "love it", "want it", "interested",
    "1", "true", "accept",
)
REJECTION_KEYWORDS = (
    "no", "n", "nope", "nah", "na", "nay",
    "pass", "skip", "reject", "decline", "not interested",
    "not now", "next time", "not this time",
    "0", "false",
)
CANCEL_KEYWORDS = ("cancel", "cancelled", "canceled", "abort")

APPROVAL_SYMBOLS = ("👍", "✓", "✅")
REJECTION_SYMBOLS = ("👎", "❌")

DIRECT_APPROVALS = ("yes", "y", "ok", "sure")
DIRECT_REJECTIONS = ("no", "n", "nope")

# Longest reply we bother to inspect; anything longer is not a yes/no answer.
MAX_REPLY_LENGTH = 500


def _phrase_pattern(phrases: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = sorted((re.escape(p) for p in phrases), key=len, reverse=True)
    return re.compile(r"(?<![\w'])(?:" + "|".join(alternatives) + r")(?![\w'])")


_APPROVAL_RE = _phrase_pattern(APPROVAL_KEYWORDS)
_REJECTION_RE = _phrase_pattern(REJECTION_KEYWORDS)
_CANCEL_RE = _phrase_pattern(CANCEL_KEYWORDS)
_DIRECT_APPROVAL_RE = _phrase_pattern(DIRECT_APPROVALS)
_DIRECT_REJECTION_RE = _phrase_pattern(DIRECT_REJECTIONS)


def _unclear(text: str) -> ParsedReply:
    return ParsedReply(ReplyIntent.UNCLEAR, ReplyConfidence.LOW, text)


def parse_reply(body: object) -> ParsedReply:
    """Classify an inbound SMS body as approve / reject / unclear.

    Never raises: None, non-strings, empty, whitespace-only and overlong
    bodies are all unclear.
    """
    if not isinstance(body, str):
        return _unclear("")
    original = body.strip()
    if not original or len(original) > MAX_REPLY_LENGTH:
        return _unclear(original[:MAX_REPLY_LENGTH])

    text = original.lower()
    if text in EXACT_APPROVALS:
        return ParsedReply(ReplyIntent.APPROVE, ReplyConfidence.HIGH, original)
    if text in EXACT_REJECTIONS:
        return ParsedReply(ReplyIntent.REJECT, ReplyConfidence.HIGH, original)
    if _CANCEL_RE.search(text):
        return ParsedReply(ReplyIntent.REJECT, ReplyConfidence.HIGH, original)

    rejected = bool(_REJECTION_RE.search(text)) or any(s in text for s in REJECTION_SYMBOLS)
    # "not interested" must not also count as "interested"
    without_rejections = _REJECTION_RE.sub(" ", text)
    approved = bool(_APPROVAL_RE.search(without_rejections)) or any(s in text for s in APPROVAL_SYMBOLS)

    if approved and rejected:
        direct_approval = bool(_DIRECT_APPROVAL_RE.search(text))
        direct_rejection = bool(_DIRECT_REJECTION_RE.search(text))
        if direct_approval and not direct_rejection:
            return ParsedReply(ReplyIntent.APPROVE, ReplyConfidence.MEDIUM, original)
        if direct_rejection and not direct_approval:
            return ParsedReply(ReplyIntent.REJECT, ReplyConfidence.MEDIUM, original)
        return _unclear(original)

    if approved:
        return ParsedReply(ReplyIntent.APPROVE, ReplyConfidence.MEDIUM, original)
    if rejected:
        return ParsedReply(ReplyIntent.REJECT, ReplyConfidence.MEDIUM, original)
    return _unclear(original)
