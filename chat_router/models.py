"""Data models for the chat router."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

FLAG_AI_KEYWORD = "ai_keyword"
FLAG_FORUM_RISK = "forum_risk"
FLAG_SELF_REPORT = "self_report"
FLAG_SCREENING_HIGH_RISK = "screening_high_risk"
FLAG_TYPES = frozenset(
    {FLAG_AI_KEYWORD, FLAG_FORUM_RISK, FLAG_SELF_REPORT, FLAG_SCREENING_HIGH_RISK}
)

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"
SEVERITIES = frozenset(
    {SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH, SEVERITY_CRITICAL}
)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass
class ApiKeyHandle:
    """Represents one upstream credential with its health state."""

    id: str
    key: str
    index: int
    is_active: bool = True
    error_count: int = 0
    last_error: Optional[str] = None
    current_model_index: int = 0
    reactivate_at: Optional[float] = None
    model_failures: Dict[str, float] = field(default_factory=dict)

    def key_prefix(self) -> str:
        if len(self.key) <= 11:
            return self.key
        return f"{self.key[:8]}...{self.key[-3:]}"


@dataclass
class RiskFlag:
    """A persisted risk detection awaiting admin review."""

    id: int
    user_id: str
    flag_type: str
    severity: str
    context: str
    resolved: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "flagType": self.flag_type,
            "severity": self.severity,
            "context": self.context,
            "resolved": self.resolved,
            "createdAt": self.created_at.isoformat(),
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass(frozen=True)
class ScreeningSeverity:
    test_type: str
    severity: str
    score: Optional[int] = None


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str


@dataclass
class ChatReply:
    """Response returned to the chat caller."""

    message: str
    is_emergency: bool = False
    emergency_contacts: Optional[Dict[str, str]] = None
    screening_context: Optional[ScreeningSeverity] = None

    def to_dict(self) -> Dict[str, object]:
        body: Dict[str, object] = {
            "message": self.message,
            "isEmergency": self.is_emergency,
        }
        if self.emergency_contacts is not None:
            body["emergencyContacts"] = dict(self.emergency_contacts)
        if self.screening_context is not None:
            body["screeningContext"] = {
                "testType": self.screening_context.test_type,
                "severity": self.screening_context.severity,
            }
        return body
