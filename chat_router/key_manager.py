"""Key pool management."""

import logging
import time
from typing import Callable, Dict, List, Optional

from chat_router.config import Config
from chat_router.errors import is_quota_error
from chat_router.models import ApiKeyHandle

logger = logging.getLogger(__name__)


class KeyPool:
    """Round-robin pool of upstream credentials with temporary exclusion.

    Deactivated keys carry a ``reactivate_at`` timestamp on the monotonic
    clock; they are re-enabled lazily the next time the pool is consulted.
    """

    def __init__(self, config: Config, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._failure_threshold = config.key_failure_threshold
        self._error_cooldown = config.key_error_cooldown_seconds
        self._quota_cooldown = config.key_quota_cooldown_seconds
        self._cursor = 0
        self.keys: Dict[str, ApiKeyHandle] = {}

        for index, api_key in enumerate(config.api_keys, start=1):
            key_id = f"key_{index}"
            self.keys[key_id] = ApiKeyHandle(id=key_id, key=api_key, index=index)

    def __len__(self) -> int:
        return len(self.keys)

    def select_key(self) -> Optional[ApiKeyHandle]:
        ordered = list(self.keys.values())
        if not ordered:
            return None

        self._reactivate_expired()

        count = len(ordered)
        for offset in range(count):
            position = (self._cursor + offset) % count
            key = ordered[position]
            if key.is_active:
                self._cursor = (position + 1) % count
                return key

        logger.warning("No active API keys left, resetting all %d keys", count)
        for key in ordered:
            self._activate(key)
        self._cursor = 1 % count
        return ordered[0]

    def report_failure(self, key: ApiKeyHandle, error: BaseException) -> None:
        key.last_error = str(error)
        now = self._clock()

        if is_quota_error(error):
            key.is_active = False
            key.reactivate_at = now + self._quota_cooldown
            logger.warning(
                "Quota exhausted on %s (%s), disabled for %ss",
                key.id,
                key.key_prefix(),
                self._quota_cooldown,
            )
            return

        key.error_count += 1
        if key.error_count >= self._failure_threshold and key.is_active:
            key.is_active = False
            key.reactivate_at = now + self._error_cooldown
            logger.warning(
                "%s (%s) failed %d times, disabled for %ss",
                key.id,
                key.key_prefix(),
                key.error_count,
                self._error_cooldown,
            )

    def report_success(self, key: ApiKeyHandle) -> None:
        key.error_count = 0

    def reset(self) -> None:
        for key in self.keys.values():
            self._activate(key)
            key.model_failures.clear()
            key.current_model_index = 0
        self._cursor = 0

    def available_count(self) -> int:
        self._reactivate_expired()
        return sum(1 for key in self.keys.values() if key.is_active)

    def get_status(self) -> Dict[str, object]:
        self._reactivate_expired()
        keys: List[Dict[str, object]] = [
            self._format_key_status(key) for key in self.keys.values()
        ]
        return {
            "total_keys": len(self.keys),
            "available_keys": sum(1 for key in self.keys.values() if key.is_active),
            "keys": keys,
        }

    def get_key_status(self, key_id: str) -> Optional[Dict[str, object]]:
        key = self.keys.get(key_id)
        if not key:
            return None
        self._reactivate_expired()
        return self._format_key_status(key)

    def _format_key_status(self, key: ApiKeyHandle) -> Dict[str, object]:
        remaining = None
        if not key.is_active and key.reactivate_at is not None:
            remaining = max(0.0, round(key.reactivate_at - self._clock(), 1))
        return {
            "id": key.id,
            "index": key.index,
            "key_prefix": key.key_prefix(),
            "is_active": key.is_active,
            "error_count": key.error_count,
            "last_error": key.last_error,
            "current_model_index": key.current_model_index,
            "reactivates_in_seconds": remaining,
            "cooling_models": sorted(key.model_failures),
        }

    def _reactivate_expired(self) -> None:
        now = self._clock()
        for key in self.keys.values():
            if (
                not key.is_active
                and key.reactivate_at is not None
                and now >= key.reactivate_at
            ):
                logger.info("Re-enabling %s after cool-down", key.id)
                self._activate(key)

    @staticmethod
    def _activate(key: ApiKeyHandle) -> None:
        key.is_active = True
        key.error_count = 0
        key.last_error = None
        key.reactivate_at = None
