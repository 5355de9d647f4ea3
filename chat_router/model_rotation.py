"""Per-key model rotation with cool-down tracking."""

import logging
import time
from typing import Callable, Dict, Iterable, List, Sequence

from chat_router.config import Config
from chat_router.errors import UpstreamError
from chat_router.models import ApiKeyHandle
from chat_router.upstream import UpstreamClient

logger = logging.getLogger(__name__)


def select_candidate_models(
    listed: Iterable[Dict[str, object]],
    include: Sequence[str],
    exclude: Sequence[str],
) -> List[str]:
    """Filter a model listing down to chat-capable candidates.

    A model qualifies when it supports ``generateContent`` (or does not
    advertise its methods), contains one of ``include`` and none of
    ``exclude``. Order of the listing is preserved; duplicates are dropped.
    """
    selected: List[str] = []
    for entry in listed:
        name = str(entry.get("name", ""))
        model_id = name[len("models/"):] if name.startswith("models/") else name
        if not model_id:
            continue

        methods = entry.get("supportedGenerationMethods")
        if isinstance(methods, list) and "generateContent" not in methods:
            continue

        lowered = model_id.lower()
        if include and not any(token in lowered for token in include):
            continue
        if any(token in lowered for token in exclude):
            continue
        if model_id not in selected:
            selected.append(model_id)
    return selected


class ModelRotationTable:
    """Round-robin over candidate models, skipping those in cool-down."""

    def __init__(self, config: Config, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cooldown = config.model_cooldown_seconds
        self._include = config.model_include
        self._exclude = config.model_exclude
        self.default_model = config.default_model
        self.models: List[str] = [config.default_model]

    def __len__(self) -> int:
        return len(self.models)

    async def discover(self, client: UpstreamClient, api_key: str) -> List[str]:
        """Populate the candidate list from the upstream model listing."""
        try:
            listed = await client.list_models(api_key)
        except UpstreamError as exc:
            logger.warning(
                "Model listing failed (%s), using default model %s",
                exc,
                self.default_model,
            )
            self.models = [self.default_model]
            return self.models

        candidates = select_candidate_models(listed, self._include, self._exclude)
        if not candidates:
            logger.warning(
                "No candidate models matched %s, using default model %s",
                ",".join(self._include),
                self.default_model,
            )
            candidates = [self.default_model]

        self.models = candidates
        logger.info("Model rotation: %s", ", ".join(self.models))
        return self.models

    def next_model(self, key: ApiKeyHandle) -> str:
        count = len(self.models)
        now = self._clock()

        for offset in range(count):
            position = (key.current_model_index + offset) % count
            model = self.models[position]
            if not self._cooling(key, model, now):
                key.current_model_index = (position + 1) % count
                return model

        logger.info("All models cooling down on %s, resetting its rotation", key.id)
        self.reset(key)
        key.current_model_index = 1 % count
        return self.models[0]

    def mark_failed(self, key: ApiKeyHandle, model: str) -> None:
        key.model_failures[model] = self._clock()

    def reset(self, key: ApiKeyHandle) -> None:
        key.model_failures.clear()
        key.current_model_index = 0

    def is_available(self, key: ApiKeyHandle, model: str) -> bool:
        return not self._cooling(key, model, self._clock())

    def _cooling(self, key: ApiKeyHandle, model: str, now: float) -> bool:
        failed_at = key.model_failures.get(model)
        return failed_at is not None and now - failed_at < self._cooldown
