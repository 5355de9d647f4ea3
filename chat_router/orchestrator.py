"""Chat request routing across API keys and models."""

import asyncio
import logging
import time
from typing import (
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from chat_router.admission import AdmissionQueue
from chat_router.cache import ResponseCache, normalize_prompt
from chat_router.config import Config
from chat_router.errors import (
    CATEGORY_AUTH,
    CATEGORY_GENERIC,
    CATEGORY_QUOTA,
    CATEGORY_TIMEOUT,
    AdmissionRejected,
    UpstreamError,
    UpstreamTimeout,
    classify_error,
)
from chat_router.key_manager import KeyPool
from chat_router.model_rotation import ModelRotationTable
from chat_router.models import (
    FLAG_AI_KEYWORD,
    ROLE_ASSISTANT,
    ROLE_USER,
    SEVERITY_CRITICAL,
    ApiKeyHandle,
    ChatReply,
    ChatTurn,
    ScreeningSeverity,
)
from chat_router.rate_limit import UserRateLimiter
from chat_router.risk import build_emergency_reply, find_risk_phrase
from chat_router.store import SupportStore
from chat_router.upstream import UpstreamClient

logger = logging.getLogger(__name__)

MAX_RETRIES = 1

SYSTEM_PROMPT = (
    "You are a supportive, empathetic AI assistant for a student mental health "
    "platform. You provide psychological first aid and emotional support. "
    "You are NOT a medical professional and should not provide diagnoses or "
    "medical advice. If users express serious concerns, encourage them to seek "
    "professional help. Keep responses brief, warm, and supportive."
)

NO_PROVIDER_MESSAGE = (
    "I'm here to listen and support you. While I'm not a replacement for "
    "professional help, I can help you explore your feelings. Would you like "
    "to access our resource hub or speak with a counselor?"
)

BUSY_MESSAGE = (
    "A lot of students are reaching out right now, so I can't respond just "
    "yet. Please try again in a minute. If you need to talk to someone now, "
    "our counselors and the resource hub are always available."
)

EXHAUSTED_MESSAGES = {
    CATEGORY_TIMEOUT: (
        "I'm taking longer than usual to respond right now. Please try sending "
        "your message again in a moment. Remember that our counselors are "
        "available if you'd like to talk to someone."
    ),
    CATEGORY_QUOTA: (
        "I'm receiving more messages than I can handle at the moment. Please "
        "wait a minute or two and try again. In the meantime, our resource hub "
        "and counselors are here for you."
    ),
    CATEGORY_AUTH: (
        "I'm having trouble connecting to my support service right now. Our "
        "team has been notified. Would you like to access our resource hub or "
        "book a session with a counselor?"
    ),
    CATEGORY_GENERIC: (
        "I'm here to support you. While I'm having some technical difficulties, "
        "please know that help is available. Would you like to access our "
        "resource hub or speak with a counselor?"
    ),
}


def parse_history(raw: object) -> List[ChatTurn]:
    """Keep only well-formed user/assistant turns from a client payload."""
    if not isinstance(raw, list):
        return []
    turns: List[ChatTurn] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        content = item.get("content")
        if role in (ROLE_USER, ROLE_ASSISTANT) and isinstance(content, str) and content:
            turns.append(ChatTurn(role=role, content=content))
    return turns


class ChatOrchestrator:
    """Routes one chat message through risk, cache, admission and upstream.

    Owns the response cache and admission queue for the lifetime of the
    process. Upstream failures never escape :meth:`handle`; they come back as
    a categorized supportive message.
    """

    def __init__(
        self,
        config: Config,
        client: UpstreamClient,
        store: SupportStore,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.client = client
        self.store = store
        self.key_pool = KeyPool(config, clock=clock)
        self.models = ModelRotationTable(config, clock=clock)
        self.cache = ResponseCache(
            max_entries=config.cache_max_entries,
            ttl_seconds=config.cache_ttl_seconds,
            clock=clock,
        )
        self.admission = AdmissionQueue(
            max_concurrent=config.max_concurrent_requests,
            max_queue_depth=config.max_queue_depth,
        )
        self.rate_limiter = UserRateLimiter(config)

    async def initialize(self) -> None:
        first_key = next(iter(self.key_pool.keys.values()), None)
        if first_key is None:
            logger.warning("No Gemini API keys configured, chat will use static replies")
            return
        await self.models.discover(self.client, first_key.key)

    async def shutdown(self) -> None:
        self.admission.shutdown()
        self.cache.clear()

    def reset(self) -> None:
        self.key_pool.reset()
        self.cache.clear()

    async def handle(
        self, user_id: str, message: str, history: Sequence[ChatTurn] = ()
    ) -> ChatReply:
        phrase = find_risk_phrase(message)
        if phrase is not None:
            return await self._emergency(user_id, message, phrase)

        self.rate_limiter.check(user_id)

        if not len(self.key_pool):
            return ChatReply(message=NO_PROVIDER_MESSAGE)

        prompt_key = normalize_prompt(message)
        cached = self.cache.get(prompt_key)
        if cached is not None:
            logger.debug("Cache hit for user %s", user_id)
            return ChatReply(message=cached)

        severity_task = asyncio.ensure_future(self._latest_severity(user_id))
        try:
            async with self.admission.slot():
                text, category = await self._route(message, history)
        except AdmissionRejected:
            severity_task.cancel()
            return ChatReply(message=BUSY_MESSAGE)
        except BaseException:
            severity_task.cancel()
            raise

        if text is None:
            severity_task.cancel()
            return ChatReply(message=EXHAUSTED_MESSAGES[category])

        self.cache.put(prompt_key, text)
        return ChatReply(message=text, screening_context=await severity_task)

    async def _emergency(self, user_id: str, message: str, phrase: str) -> ChatReply:
        context = f"Risk phrase '{phrase}' detected in AI chat: {message[:200]}"
        try:
            await self.store.record_risk_flag(
                user_id, context, flag_type=FLAG_AI_KEYWORD, severity=SEVERITY_CRITICAL
            )
        except Exception:
            logger.exception("Failed to persist risk flag for user %s", user_id)
        return build_emergency_reply(self.config)

    async def _latest_severity(self, user_id: str) -> Optional[ScreeningSeverity]:
        try:
            return await self.store.get_latest_severity(user_id)
        except Exception:
            logger.exception("Screening lookup failed for user %s", user_id)
            return None

    async def _route(
        self, message: str, history: Sequence[ChatTurn]
    ) -> Tuple[Optional[str], str]:
        contents = self._build_contents(message, history)
        category = CATEGORY_GENERIC
        attempts = 0

        for key in self._iter_keys():
            for model in self._iter_models(key):
                attempts += 1
                try:
                    text = await self._call_with_retry(key, model, contents)
                except UpstreamError as exc:
                    category = classify_error(exc)
                    logger.warning(
                        "Model %s on %s failed (%s): %s",
                        model,
                        key.id,
                        category,
                        exc,
                    )
                    self.key_pool.report_failure(key, exc)
                    if category == CATEGORY_AUTH:
                        break
                    self.models.mark_failed(key, model)
                    continue

                self.key_pool.report_success(key)
                logger.info("Reply from %s on %s after %d attempt(s)", model, key.id, attempts)
                return text, category

        logger.error("All upstream attempts failed (%d tried, last=%s)", attempts, category)
        return None, category

    async def _call_with_retry(
        self, key: ApiKeyHandle, model: str, contents: List[Dict[str, object]]
    ) -> str:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    self.client.generate(
                        key.key,
                        model,
                        SYSTEM_PROMPT,
                        contents,
                        self.config.max_output_tokens,
                        self.config.temperature,
                    ),
                    timeout=self.config.upstream_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error: UpstreamError = UpstreamTimeout(
                    f"No reply from {model} within "
                    f"{self.config.upstream_timeout_seconds}s"
                )
            except UpstreamError as exc:
                error = exc

            # Quota and auth failures move straight on to the next candidate.
            if attempt >= MAX_RETRIES or classify_error(error) in (
                CATEGORY_QUOTA,
                CATEGORY_AUTH,
            ):
                raise error

            delay = self.config.retry_base_delay_seconds * (2**attempt)
            attempt += 1
            logger.info("Retrying %s on %s in %.2fs (%s)", model, key.id, delay, error)
            await asyncio.sleep(delay)

    def _iter_keys(self) -> Iterator[ApiKeyHandle]:
        limit = min(len(self.key_pool), self.config.max_keys_per_request)
        tried: Set[str] = set()
        while len(tried) < limit:
            key = None
            for _ in range(len(self.key_pool)):
                candidate = self.key_pool.select_key()
                if candidate is not None and candidate.id not in tried:
                    key = candidate
                    break
            if key is None:
                return
            tried.add(key.id)
            yield key

    def _iter_models(self, key: ApiKeyHandle) -> Iterator[str]:
        tried: Set[str] = set()
        for _ in range(len(self.models)):
            model = self.models.next_model(key)
            if model in tried:
                return
            tried.add(model)
            yield model

    def _build_contents(
        self, message: str, history: Sequence[ChatTurn]
    ) -> List[Dict[str, object]]:
        recent = list(history)[-self.config.history_turns :] if self.config.history_turns else []
        contents: List[Dict[str, object]] = [
            {
                "role": "model" if turn.role == ROLE_ASSISTANT else "user",
                "parts": [{"text": turn.content}],
            }
            for turn in recent
        ]
        contents.append({"role": "user", "parts": [{"text": message}]})
        return contents

    def get_status(self) -> Dict[str, object]:
        return {
            "keys_available": self.key_pool.available_count(),
            "total_keys": len(self.key_pool),
            "models": list(self.models.models),
            "in_flight": self.admission.in_flight,
            "queued": self.admission.queued,
            "cached_replies": len(self.cache),
        }
