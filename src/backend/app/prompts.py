from typing import Any, Dict, List, Optional, Sequence

# Baseline voice for every lead-facing text
AGENT_SYSTEM = """
You are a licensed insurance / real-estate agent's texting assistant. Keep every SMS short, warm and professional.
Never give medical, legal or pricing guarantees. Never invent appointment times; only use times you are given.
Never ask for information the lead already gave you.
""".strip()

STEP_DECISION_SYSTEM = (
    "You are a sales agent who reads conversations carefully and responds appropriately. "
    "Think about what the client is really saying and what makes sense to say next. "
    "Return only valid JSON, no markdown."
)


def history_text(history: Sequence[Dict[str, Any]], limit: int = 10) -> str:
    lines = []
    for turn in list(history)[-limit:]:
        who = "Lead" if turn.get("role") in ("user", "lead", "inbound") else "You"
        lines.append(f"{who}: {turn.get('content', '')}")
    return "\n".join(lines)


def step_decision_prompt(step: Dict[str, Any], message: str, history: Sequence[Dict[str, Any]]) -> str:
    responses = step.get("responses") or []
    options = "\n".join(
        f'{i}. {r.get("label", "")}: "{r.get("follow_up", "")}"' for i, r in enumerate(responses)
    )
    return f"""You are a sales agent in a text message conversation. Respond naturally to the client's message while following your conversation flow.

CONVERSATION CONTEXT:
{history_text(history) or "This is the start of the conversation"}

YOUR LAST MESSAGE:
"{step.get("message", "")}"

CLIENT'S RESPONSE:
"{message}"

YOUR AVAILABLE RESPONSES:
{options}

Only use a preset response if it directly addresses what the client said. Otherwise write a custom
response that first acknowledges what they said, then moves the conversation forward.
If they ask to be texted later, acknowledge it and ask when would be good instead of repeating your question.

Return ONLY valid JSON:
{{
  "matchedResponseIndex": <number 0 to {max(len(responses) - 1, 0)}, or null for a custom response>,
  "customResponse": "<custom text, only when matchedResponseIndex is null>",
  "reasoning": "<1-2 sentences>"
}}"""


def flow_reply_system(agent_name: Optional[str] = None) -> str:
    base = AGENT_SYSTEM
    if agent_name:
        base += f"\nYou are texting on behalf of {agent_name}."
    return base


def flow_reply_prompt(
    message: str,
    next_question: str,
    collected: Dict[str, Any],
    history: Sequence[Dict[str, Any]],
) -> str:
    known = "\n".join(f"- {k}: {v}" for k, v in collected.items() if v not in (None, "")) or "- nothing yet"
    return f"""Recent conversation:
{history_text(history)}

The lead just wrote: "{message}"

Information already collected (do NOT ask for any of it again):
{known}

Write ONE short SMS (under 300 characters) that briefly acknowledges their message and then asks exactly this question:
"{next_question}"

Do not mention any dates or times. Return only the SMS text."""


def smart_replies_prompt(lead: Dict[str, Any], history: Sequence[Dict[str, Any]], agent_name: Optional[str] = None) -> str:
    return f"""Generate 3 short, professional SMS reply suggestions for this conversation.

Lead Info:
- Name: {lead.get("first_name") or ""} {lead.get("last_name") or ""}
- Status: {lead.get("status") or "new"}
- Disposition: {lead.get("disposition") or "neutral"}
- Agent: {agent_name or "Agent"}

Recent Conversation:
{history_text(history, limit=5)}

Generate 3 varied reply options (under 160 characters each). Return ONLY the replies, one per line, no numbering or labels."""


def follow_up_prompt(lead: Dict[str, Any], days_since_contact: int = 0, summary: str = "") -> str:
    extra = f"\nPrevious conversation summary: {summary}" if summary else ""
    return f"""Generate a follow-up SMS for this lead:

Lead: {lead.get("first_name") or "there"}
Status: {lead.get("status") or "new"}
Disposition: {lead.get("disposition") or "none"}
Days since last contact: {days_since_contact}{extra}

Write a short, friendly follow-up (under 160 characters) that provides value. Return only the SMS text."""


def drip_message_prompt(lead: Dict[str, Any], message_number: int, previous: List[str]) -> str:
    prev = "\n".join(f"- {p}" for p in previous[-3:]) or "- none"
    return f"""Write follow-up text #{message_number} for {lead.get("first_name") or "a lead"} who has not replied yet.

Earlier follow-ups (do not repeat them):
{prev}

Keep it under 300 characters, casual and low-pressure, and end with a simple question. Return only the SMS text."""


def drip_sequence_prompt(lead: Dict[str, Any], count: int, history: Sequence[str]) -> str:
    convo = "\n".join(history) or "No previous conversation"
    return f"""You are creating a follow-up sequence for {lead.get("first_name") or "a customer"} who hasn't responded.

Recent conversation:
{convo}

Generate exactly {count} unique follow-up messages, each on a new line. Each message should:
- Be brief (under 160 characters)
- Be friendly but professional
- Vary in approach (first one gentle, later ones more direct)
- Include a question or call-to-action
- NOT repeat previous messages

Format: just the messages, one per line, no numbering."""


def spam_rewrite_prompt(message: str, flags: Sequence[str]) -> str:
    issues = "\n".join(f"- {f}" for f in flags) or "- none"
    return f"""Rewrite this SMS so it avoids carrier spam filters while keeping the same meaning and a natural tone.

Original message:
{message}

Detected issues:
{issues}

Rules: no ALL CAPS, no repeated punctuation, no spam trigger phrases, at most one link, under 320 characters.
Return only the rewritten SMS."""


def sentiment_prompt(lead_messages: Sequence[str]) -> str:
    joined = "\n".join(lead_messages)
    return f"""Analyze the sentiment of these messages from a sales lead:

{joined}

Return a JSON object:
{{"sentiment": "positive" | "neutral" | "negative", "score": <number between -1 and 1>, "insights": [2-3 brief insights]}}"""
