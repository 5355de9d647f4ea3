"""HTTP client for the Gemini REST API."""

import logging
from typing import Dict, List, Optional, Protocol, cast

import httpx

from chat_router.errors import UpstreamError, UpstreamTimeout

logger = logging.getLogger(__name__)

API_VERSION = "v1beta"
MAX_LISTING_PAGES = 10


class UpstreamClient(Protocol):
    async def list_models(self, api_key: str) -> List[Dict[str, object]]: ...

    async def generate(
        self,
        api_key: str,
        model: str,
        system_prompt: str,
        contents: List[Dict[str, object]],
        max_output_tokens: int,
        temperature: float,
    ) -> str: ...


def _error_message(response: httpx.Response) -> str:
    """Extract the error message from a Gemini error body."""
    try:
        data = cast(Dict[str, object], response.json())
    except ValueError:
        return response.text or response.reason_phrase
    error_obj = data.get("error", {}) if isinstance(data, dict) else {}
    if isinstance(error_obj, dict):
        error_dict = cast(Dict[str, object], error_obj)
        message = str(error_dict.get("message", ""))
        status = str(error_dict.get("status", ""))
        if status and status not in message:
            return f"{status}: {message}" if message else status
        if message:
            return message
    return response.text or response.reason_phrase


def _extract_text(data: Dict[str, object]) -> str:
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    first = candidates[0]
    if not isinstance(first, dict):
        return ""
    content = first.get("content", {})
    parts = content.get("parts", []) if isinstance(content, dict) else []
    texts = [
        str(part["text"])
        for part in parts
        if isinstance(part, dict) and part.get("text")
    ]
    return "".join(texts).strip()


class GeminiClient:
    """Thin wrapper issuing model-listing and generateContent calls."""

    def __init__(self, http_client: httpx.AsyncClient):
        self._http = http_client

    async def list_models(self, api_key: str) -> List[Dict[str, object]]:
        models: List[Dict[str, object]] = []
        page_token: Optional[str] = None

        for _ in range(MAX_LISTING_PAGES):
            params = {"pageSize": "1000"}
            if page_token:
                params["pageToken"] = page_token
            data = await self._send(
                "GET", f"/{API_VERSION}/models", api_key, params=params
            )
            listed = data.get("models", [])
            if isinstance(listed, list):
                models.extend(entry for entry in listed if isinstance(entry, dict))
            page_token = cast(Optional[str], data.get("nextPageToken"))
            if not page_token:
                break

        return models

    async def generate(
        self,
        api_key: str,
        model: str,
        system_prompt: str,
        contents: List[Dict[str, object]],
        max_output_tokens: int,
        temperature: float,
    ) -> str:
        payload: Dict[str, object] = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": max_output_tokens,
                "temperature": temperature,
            },
        }
        if system_prompt:
            if model.startswith("gemma"):
                # Gemma endpoints reject systemInstruction; prepend it instead.
                payload["contents"] = [
                    {"role": "user", "parts": [{"text": system_prompt}]},
                    {"role": "model", "parts": [{"text": "Understood."}]},
                ] + contents
            else:
                payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        data = await self._send(
            "POST",
            f"/{API_VERSION}/models/{model}:generateContent",
            api_key,
            json=payload,
        )
        text = _extract_text(data)
        if not text:
            raise UpstreamError(None, f"Empty response from model {model}")
        return text

    async def _send(
        self, method: str, url: str, api_key: str, **kwargs
    ) -> Dict[str, object]:
        try:
            response = await self._http.request(
                method, url, headers={"x-goog-api-key": api_key}, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"Timeout calling {url}") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(None, f"Request error: {exc}") from exc

        if response.status_code >= 400:
            raise UpstreamError(response.status_code, _error_message(response))

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError(response.status_code, "Malformed JSON response") from exc
        if not isinstance(data, dict):
            raise UpstreamError(response.status_code, "Unexpected response shape")
        return cast(Dict[str, object], data)
