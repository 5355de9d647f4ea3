"""Keyword risk detection for chat messages."""

from typing import Optional

from chat_router.config import Config
from chat_router.models import ChatReply

RISK_PHRASES = (
    "suicide",
    "suicidal",
    "kill myself",
    "end my life",
    "want to die",
    "self harm",
    "cutting",
    "hurting myself",
    "harm myself",
    "no reason to live",
    "better off dead",
    "give up",
)

CRISIS_TEXT_LINE = "Text HOME to 741741"


def find_risk_phrase(text: str) -> Optional[str]:
    """Return the first risk phrase contained in ``text``, if any."""
    lowered = text.lower()
    for phrase in RISK_PHRASES:
        if phrase in lowered:
            return phrase
    return None


def detect(text: str) -> bool:
    return find_risk_phrase(text) is not None


def build_emergency_reply(config: Config) -> ChatReply:
    message = (
        "I'm concerned about what you've shared. Your safety is important. "
        "Please reach out to:\n\n"
        f"• National Suicide Prevention Lifeline: {config.emergency_hotline}\n"
        f"• Crisis Text Line: {CRISIS_TEXT_LINE}\n"
        f"• Institution Support: {config.institution_email} "
        f"/ {config.institution_phone}\n\n"
        "These services are available 24/7 and are here to help."
    )
    return ChatReply(
        message=message,
        is_emergency=True,
        emergency_contacts=config.emergency_contacts,
    )
