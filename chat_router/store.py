"""Persistence collaborators for risk flags and screening results."""

import itertools
import logging
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from chat_router.models import (
    FLAG_AI_KEYWORD,
    FLAG_TYPES,
    SEVERITIES,
    SEVERITY_CRITICAL,
    RiskFlag,
    ScreeningSeverity,
)

logger = logging.getLogger(__name__)


class SupportStore(Protocol):
    async def record_risk_flag(
        self,
        user_id: str,
        context: str,
        flag_type: str = FLAG_AI_KEYWORD,
        severity: str = SEVERITY_CRITICAL,
    ) -> RiskFlag: ...

    async def get_latest_severity(self, user_id: str) -> Optional[ScreeningSeverity]: ...


class InMemoryStore:
    """Process-local store backing risk flags and screening results."""

    def __init__(self):
        self._flags: Dict[int, RiskFlag] = {}
        self._screenings: Dict[str, List[ScreeningSeverity]] = {}
        self._ids = itertools.count(1)

    async def record_risk_flag(
        self,
        user_id: str,
        context: str,
        flag_type: str = FLAG_AI_KEYWORD,
        severity: str = SEVERITY_CRITICAL,
    ) -> RiskFlag:
        if flag_type not in FLAG_TYPES:
            raise ValueError(f"Unknown flag type: {flag_type}")
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")

        flag = RiskFlag(
            id=next(self._ids),
            user_id=user_id,
            flag_type=flag_type,
            severity=severity,
            context=context,
        )
        self._flags[flag.id] = flag
        logger.warning(
            "Risk flag %d recorded for user %s (%s/%s)",
            flag.id,
            user_id,
            flag_type,
            severity,
        )
        return flag

    async def get_latest_severity(self, user_id: str) -> Optional[ScreeningSeverity]:
        results = self._screenings.get(user_id)
        if not results:
            return None
        return results[-1]

    async def record_screening(
        self, user_id: str, test_type: str, severity: str, score: Optional[int] = None
    ) -> ScreeningSeverity:
        """Write path for the screening collaborator; tests use it to seed results."""
        result = ScreeningSeverity(test_type=test_type, severity=severity, score=score)
        self._screenings.setdefault(user_id, []).append(result)
        return result

    async def list_risk_flags(self, resolved: Optional[bool] = None) -> List[RiskFlag]:
        flags = sorted(self._flags.values(), key=lambda flag: flag.id, reverse=True)
        if resolved is None:
            return flags
        return [flag for flag in flags if flag.resolved == resolved]

    async def resolve_risk_flag(self, flag_id: int) -> Optional[RiskFlag]:
        flag = self._flags.get(flag_id)
        if flag is None:
            return None
        if not flag.resolved:
            flag.resolved = True
            flag.resolved_at = datetime.now()
        return flag
