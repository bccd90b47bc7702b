import re
from typing import Dict, Any, List

SPAM_KEYWORDS = [
    "free money", "click here", "act now", "limited time",
    "congratulations", "you won", "claim now", "urgent",
    "winner", "prize", "cash", "bitcoin", "crypto",
    "investment opportunity", "double your", "make money fast",
]

PROHIBITED_TOPICS = [
    "medical advice",
    "legal advice",
    "guaranteed returns",
    "specific pricing",
    "competitor disparagement",
    "discriminatory language",
]

MAX_MESSAGE_LENGTH = 320  # two SMS segments

_URL_RE = re.compile(r"https?://\S+")
_PHONE_RE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")


def check_spam_risk(message: str, recipient_count: int = 1) -> Dict[str, Any]:
    message = message or ""
    flags: List[str] = []
    score = 0

    if len(message) < 10:
        flags.append("Message too short")
        score += 15

    caps = sum(1 for ch in message if "A" <= ch <= "Z")
    if len(message) > 20 and caps / len(message) > 0.5:
        flags.append("Excessive capitalization")
        score += 20

    lower = message.lower()
    found = [kw for kw in SPAM_KEYWORDS if kw in lower]
    if found:
        flags.append("Contains spam keywords: " + ", ".join(found))
        score += 15 * len(found)

    if len(_URL_RE.findall(message)) > 2:
        flags.append("Too many links")
        score += 25

    if re.search(r"\$\$+|!!!+", message):
        flags.append("Suspicious punctuation patterns")
        score += 10

    if recipient_count > 100:
        flags.append("High volume sending (>100 recipients)")
        score += 20
    elif recipient_count > 50:
        flags.append("Medium volume sending (>50 recipients)")
        score += 10

    if re.search(r"(.)\1{4,}", message):
        flags.append("Repeated characters detected")
        score += 10

    blocked = False
    if score >= 70:
        level = "critical"
        blocked = True
        recommendations = [
            "Message blocked - high spam score",
            "Remove spam keywords and reduce links",
            "Use more natural language",
        ]
    elif score >= 50:
        level = "high"
        recommendations = [
            "High spam risk - deliverability may be affected",
            "Consider rewording your message",
            "Reduce capitalization and exclamation marks",
        ]
    elif score >= 30:
        level = "medium"
        recommendations = ["Medium spam risk detected", "Review message for spam triggers"]
    else:
        level = "low"
        recommendations = ["Message looks good"]

    return {
        "level": level,
        "score": score,
        "flags": flags,
        "blocked": blocked,
        "recommendations": recommendations,
    }


def truncate_message(message: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Cut at the last space inside the limit unless that would drop more than 30% of it."""
    if len(message) <= limit:
        return message
    truncated = message[:limit]
    last_space = truncated.rfind(" ")
    if last_space > limit * 0.7:
        return truncated[:last_space]
    return truncated


def apply_guardrails(message: str, max_length: int = MAX_MESSAGE_LENGTH) -> Dict[str, Any]:
    """Checks an AI-written text before it is sent to a lead."""
    violations: List[str] = []
    final = (message or "").strip()

    if len(final) > max_length:
        final = truncate_message(final, max_length)
        violations.append("Message truncated to max length")

    lower = final.lower()
    for topic in PROHIBITED_TOPICS:
        if topic in lower:
            violations.append(f"Prohibited topic: {topic}")

    # templated numbers ({{agent_phone}}) are filled in later and are allowed
    if _PHONE_RE.search(final) and "{{" not in final:
        violations.append("AI attempted to include a phone number")
    if _EMAIL_RE.search(final):
        violations.append("AI attempted to include an email address")

    blocking = [v for v in violations if v.startswith("Prohibited topic") or v.startswith("AI attempted")]
    return {"passed": not blocking, "message": final, "violations": violations}
