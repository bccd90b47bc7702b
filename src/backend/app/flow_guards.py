import re
from difflib import SequenceMatcher
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .flow_fields import is_answered, question_text

REPEAT_THRESHOLD = 0.9
REASK_THRESHOLD = 0.8

_REPLY_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?)(?![\w])", re.IGNORECASE)
_REPLY_CLOCK_RE = re.compile(r"\b(\d{1,2}):(\d{2})\b")


def normalize_text(text: str) -> str:
    return " ".join(re.sub(r"[^a-z0-9 ]+", " ", (text or "").lower()).split())


def similarity(a: str, b: str) -> float:
    na, nb = normalize_text(a), normalize_text(b)
    if not na or not nb:
        return 0.0
    return SequenceMatcher(None, na, nb).ratio()


def times_mentioned(text: str) -> List[Tuple[int, int]]:
    """(hour, minute) pairs for clock times written in an outgoing reply."""
    out: List[Tuple[int, int]] = []
    for m in _REPLY_TIME_RE.finditer(text or ""):
        hour = int(m.group(1))
        minute = int(m.group(2) or 0)
        pm = m.group(3).lower().startswith("p")
        if not 1 <= hour <= 12:
            continue
        if pm and hour < 12:
            hour += 12
        elif not pm and hour == 12:
            hour = 0
        out.append((hour, minute))
    if not out:
        for m in _REPLY_CLOCK_RE.finditer(text or ""):
            hour, minute = int(m.group(1)), int(m.group(2))
            if hour < 24 and minute < 60:
                out.append((hour, minute))
    return out


def mentions_unoffered_time(reply: str, offered: Sequence[Dict[str, Any]]) -> bool:
    """True when the reply names a time that is not one of the offered slots."""
    mentioned = times_mentioned(reply)
    if not mentioned:
        return False
    allowed = set()
    for slot in offered or []:
        start = datetime.fromisoformat(slot["start"])
        allowed.add((start.hour, start.minute))
    return any(t not in allowed for t in mentioned)


def repeats_agent_message(reply: str, history: Sequence[Dict[str, Any]], threshold: float = REPEAT_THRESHOLD) -> bool:
    for turn in history:
        if turn.get("role") != "assistant":
            continue
        if similarity(reply, turn.get("content", "")) >= threshold:
            return True
    return False


def _question_sentences(text: str) -> List[str]:
    parts = re.split(r"(?<=[.!?])\s+", (text or "").strip())
    return [p for p in parts if p.endswith("?")]


def reasks_answered(
    reply: str,
    questions: Sequence[Dict[str, Any]],
    collected: Dict[str, Any],
    threshold: float = REASK_THRESHOLD,
) -> Optional[Dict[str, Any]]:
    """The answered question the reply asks again, if any."""
    norm_reply = normalize_text(reply)
    asked = _question_sentences(reply)
    for q in questions:
        if not is_answered(q, collected):
            continue
        qt = question_text(q)
        nq = normalize_text(qt)
        if nq and nq in norm_reply:
            return q
        if any(similarity(sentence, qt) >= threshold for sentence in asked):
            return q
    return None
