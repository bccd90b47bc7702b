import re
from typing import Any, Dict, List, Optional, Sequence

STOP_WORDS = {
    "what", "your", "you", "have", "does", "with", "that", "this", "there", "their", "about",
    "would", "could", "should", "which", "when", "where", "many", "much", "like", "from",
    "please", "tell", "share", "currently", "current", "looking", "into", "also",
    "they", "them", "were", "been", "some", "anyone", "everyone", "name",
}

NON_ANSWERS = {
    "not sure", "notsure", "idk", "i dont know", "i don't know", "dont know", "don't know",
    "no idea", "unsure", "maybe", "?", "??", "huh", "what", "hmm", "dunno",
}

QUESTION_OPENERS = (
    "what", "who", "why", "how", "when", "where", "which", "can", "could", "is", "are",
    "do", "does", "will", "would", "should", "may",
)

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"(?:\+?1[\s.-]?)?\(?(\d{3})\)?[\s.-]?(\d{3})[\s.-]?(\d{4})\b")
_ZIP_RE = re.compile(r"\b(\d{5})(?:-\d{4})?\b")
_INT_RE = re.compile(r"\b\d{1,3}\b")


def normalize_key(key: str) -> str:
    """camelCase / snake_case / kebab / spaces -> lowercase words."""
    s = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", key or "")
    s = re.sub(r"[_\-]+", " ", s)
    s = re.sub(r"[^A-Za-z0-9 ]+", " ", s)
    return " ".join(s.lower().split())


def _significant_words(text: str) -> set:
    return {w for w in normalize_key(text).split() if len(w) > 3 and w not in STOP_WORDS}


def question_field(q: Dict[str, Any]) -> str:
    return str(q.get("field_name") or q.get("fieldName") or "")


def question_text(q: Dict[str, Any]) -> str:
    return str(q.get("question") or "")


def _has_value(v: Any) -> bool:
    if v is None:
        return False
    if isinstance(v, str):
        return bool(v.strip())
    if isinstance(v, (list, dict)):
        return bool(v)
    return True


def is_answered(q: Dict[str, Any], collected: Dict[str, Any]) -> bool:
    field = question_field(q)
    if field and _has_value(collected.get(field)):
        return True
    nq = normalize_key(question_text(q))
    q_words = _significant_words(question_text(q))
    for key, value in collected.items():
        if not _has_value(value):
            continue
        nk = normalize_key(key)
        # keys shorter than 3 chars would match almost any question text
        if len(nk) >= 3 and nq and (nk in nq or nq in nk):
            return True
        if q_words & _significant_words(key):
            return True
    return False


def collected_fields(questions: Sequence[Dict[str, Any]], collected: Optional[Dict[str, Any]]) -> List[str]:
    """Field names of the questions that already have an answer, in declaration order."""
    collected = collected or {}
    return [question_field(q) for q in questions if is_answered(q, collected)]


def next_unanswered(questions: Sequence[Dict[str, Any]], collected: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    collected = collected or {}
    for q in questions:
        if not is_answered(q, collected):
            return q
    return None


def is_non_answer(message: str) -> bool:
    text = " ".join((message or "").strip().lower().split())
    bare = text.rstrip(".!?")
    if not bare or bare in NON_ANSWERS:
        return True
    # a trailing "?" alone is uncertainty ("Smith?"), not a question back
    if text.endswith("?"):
        first = re.split(r"\W+", text, maxsplit=1)[0]
        return first in QUESTION_OPENERS
    return False


def _kind(field_name: str, question: str) -> str:
    words = set(normalize_key(field_name).split())
    qlow = (question or "").lower()
    if "email" in words or "e-mail" in qlow or "email" in qlow:
        return "email"
    if words & {"phone", "mobile", "cell"} or "phone number" in qlow:
        return "phone"
    if words & {"zip", "zipcode", "postal"} or "zip" in qlow:
        return "zip"
    if words & {"age", "ages"} or re.search(r"\bages?\b|how old", qlow):
        return "age"
    if words & {"count", "size", "dependents", "household", "people", "members"} or "how many" in qlow:
        return "count"
    return "text"


def extract_answer(field_name: str, question: str, message: str) -> Optional[str]:
    """Typed extraction of an answer from a free-text reply, or None for a non-answer."""
    if not message or not message.strip() or is_non_answer(message):
        return None
    text = message.strip()
    kind = _kind(field_name, question)
    if kind == "email":
        m = _EMAIL_RE.search(text)
        return m.group(0) if m else None
    if kind == "phone":
        m = _PHONE_RE.search(text)
        return "".join(m.groups()) if m else None
    if kind == "zip":
        m = _ZIP_RE.search(text)
        return m.group(1) if m else None
    if kind == "age":
        nums = _INT_RE.findall(text)
        return ", ".join(nums) if nums else None
    if kind == "count":
        nums = _INT_RE.findall(text)
        return nums[0] if nums else None
    return text.rstrip("?").strip() or None
