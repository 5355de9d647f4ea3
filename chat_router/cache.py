"""In-process reply cache keyed by a normalized prompt prefix."""

import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

PROMPT_KEY_LENGTH = 100


def normalize_prompt(message: str) -> str:
    # Lossy on purpose: prompts sharing a 100-character prefix collide.
    return message.lower().strip()[:PROMPT_KEY_LENGTH]


class ResponseCache:
    """Bounded TTL cache evicting the oldest insertion first."""

    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, prompt_key: str) -> bool:
        return self.get(prompt_key) is not None

    def get(self, prompt_key: str) -> Optional[str]:
        entry = self._entries.get(prompt_key)
        if entry is None:
            return None
        reply, inserted_at = entry
        if self._clock() - inserted_at >= self.ttl_seconds:
            del self._entries[prompt_key]
            return None
        return reply

    def put(self, prompt_key: str, reply: str) -> None:
        self._entries.pop(prompt_key, None)
        self._entries[prompt_key] = (reply, self._clock())
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
