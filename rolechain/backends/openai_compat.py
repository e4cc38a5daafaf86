"""Streaming client for OpenAI-compatible chat completion APIs."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence

import httpx

from ..constants import DEFAULT_STEP_TIMEOUT, REASONING_END, REASONING_START
from ..contracts import ChatMessage, ImagePart, MultipartContent, TextContent
from ..multimodal import save_generated_image
from .base import ChunkCallback, CompletionError

logger = logging.getLogger(__name__)

_BASE64_FIELD = re.compile(r'"(?:data|b64_json|image)"\s*:\s*"([A-Za-z0-9+/=]{100,})"')
_BASE64_BODY = re.compile(r"^[A-Za-z0-9+/=]+$")
_MIN_INLINE_IMAGE_CHARS = 100
_MIN_RECOVERED_IMAGE_BYTES = 1000
# JPEG, PNG, GIF
_IMAGE_MAGIC = (b"\xff\xd8", b"\x89\x50", b"\x47\x49")


def _dig(data: Any, *path: Any) -> Any:
    """Follow ``path`` through nested dicts/lists, ``None`` on any miss."""
    for key in path:
        try:
            data = data[key]
        except (KeyError, IndexError, TypeError):
            return None
    return data


def _text_of(data: dict) -> Optional[str]:
    for candidate in (
        _dig(data, "choices", 0, "delta", "content"),
        _dig(data, "choices", 0, "message", "content"),
        data.get("content"),
        data.get("response"),
        data.get("text"),
    ):
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def _inline_image_of(data: dict) -> Optional[str]:
    parts = _dig(data, "candidates", 0, "content", "parts") or []
    inline_parts = [p for p in parts if isinstance(p, dict) and p.get("inlineData")]
    for candidate in (
        data.get("image"),
        data.get("b64_json"),
        _dig(data, "data", 0, "b64_json"),
        _dig(data, "choices", 0, "delta", "inline_data", "data"),
        _dig(data, "choices", 0, "message", "content", 0, "inline_data", "data"),
        _dig(inline_parts, 0, "inlineData", "data"),
    ):
        if isinstance(candidate, str) and len(candidate) > _MIN_INLINE_IMAGE_CHARS:
            return candidate
    return None


def encode_message(message: ChatMessage) -> dict:
    """Render a message in the OpenAI chat format."""
    content = message.content
    if isinstance(content, TextContent):
        return {"role": message.role, "content": content.text}

    parts: list[dict] = []
    for part in content.parts:
        if isinstance(part, ImagePart):
            encoded = base64.b64encode(part.data).decode("ascii")
            parts.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{part.media_type};base64,{encoded}"},
                }
            )
        else:
            parts.append({"type": "text", "text": part.text})
    return {"role": message.role, "content": parts}


class OpenAICompatibleBackend:
    """Stream ``/chat/completions`` responses over SSE.

    Besides plain text deltas, the backend understands reasoning deltas,
    image responses and base64 image payloads; generated images are written
    to ``uploads_dir`` and reported through the image marker.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = DEFAULT_STEP_TIMEOUT,
        uploads_dir: Path = Path("uploads"),
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.uploads_dir = Path(uploads_dir)
        self._client = client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream_complete(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        model: str,
        on_chunk: ChunkCallback,
    ) -> str:
        payload = {
            "model": model,
            "messages": [{"role": "system", "content": system_prompt}]
            + [encode_message(m) for m in messages],
            "stream": True,
        }
        try:
            async with self._session() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise CompletionError(self._error_message(response))

                    content_type = response.headers.get("content-type", "")
                    if content_type.startswith("image/") or content_type == "application/octet-stream":
                        data = await response.aread()
                        return save_generated_image(data, self.uploads_dir, str(uuid.uuid4()))

                    return await self._consume(response, on_chunk)
        except CompletionError:
            raise
        except httpx.TimeoutException as exc:
            logger.error(f"Completion request timed out: {exc}")
            raise CompletionError("AI request timed out, please retry") from exc
        except httpx.HTTPError as exc:
            logger.error(f"Completion request failed: {exc}")
            raise CompletionError(f"AI call failed: {exc}") from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        if response.status_code == 401:
            return "Invalid API key, check your settings"
        if response.status_code == 429:
            return "API rate limit exceeded, please retry later"
        try:
            detail = _dig(response.json(), "error", "message")
        except ValueError:
            detail = None
        logger.error(f"Completion API returned {response.status_code}: {response.text[:500]}")
        return detail or f"AI call failed with status {response.status_code}"

    async def _consume(self, response: httpx.Response, on_chunk: ChunkCallback) -> str:
        full = ""
        raw_lines: list[str] = []
        is_sse: Optional[bool] = None

        async for line in response.aiter_lines():
            raw_lines.append(line)
            stripped = line.strip()
            if not stripped:
                continue
            if is_sse is None:
                is_sse = stripped.startswith(("data:", "event:", ":"))
            if not is_sse or not stripped.startswith("data:"):
                continue

            body = stripped[len("data:"):].strip()
            if body == "[DONE]":
                continue
            try:
                data = json.loads(body)
            except ValueError:
                continue
            if not isinstance(data, dict):
                continue

            reasoning = _dig(data, "choices", 0, "delta", "reasoning_content")
            if isinstance(reasoning, str) and reasoning:
                await on_chunk(f"{REASONING_START}{reasoning}{REASONING_END}")

            content = _text_of(data)
            image = _inline_image_of(data)
            if image is not None:
                marker = self._save_base64(image, min_bytes=0)
                if marker is not None:
                    full = marker
            elif data.get("url") or _dig(data, "data", 0, "url"):
                content = f"![Generated Image]({data.get('url') or _dig(data, 'data', 0, 'url')})"

            if content and content.strip():
                full += content
                await on_chunk(content)

        if full:
            return full
        return await self._fallback("\n".join(raw_lines), on_chunk)

    async def _fallback(self, body: str, on_chunk: ChunkCallback) -> str:
        """Interpret a body that did not stream usable SSE text."""
        match = _BASE64_FIELD.search(body)
        if match:
            marker = self._save_base64(match.group(1))
            if marker is not None:
                return marker

        compact = re.sub(r"\s", "", body)
        compact = re.sub(r"^data:[^,]+,", "", compact)
        if len(compact) > _MIN_INLINE_IMAGE_CHARS and _BASE64_BODY.match(compact):
            marker = self._save_base64(compact)
            if marker is not None:
                return marker

        try:
            parsed = json.loads(body)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            image = (
                _dig(parsed, "data", 0, "b64_json")
                or _dig(parsed, "candidates", 0, "content", "parts", 0, "inlineData", "data")
                or parsed.get("image")
            )
            if isinstance(image, str):
                marker = self._save_base64(image, min_bytes=0)
                if marker is not None:
                    return marker
            content = _dig(parsed, "choices", 0, "message", "content")
            if isinstance(content, str) and content:
                await on_chunk(content)
                return content

        if body:
            await on_chunk(body)
        return body

    def _save_base64(
        self, encoded: str, min_bytes: int = _MIN_RECOVERED_IMAGE_BYTES
    ) -> Optional[str]:
        try:
            data = base64.b64decode(encoded, validate=False)
        except (binascii.Error, ValueError) as exc:
            logger.error(f"Failed to decode base64 image payload: {exc}")
            return None
        if min_bytes and (len(data) <= min_bytes or data[:2] not in _IMAGE_MAGIC):
            return None
        return save_generated_image(data, self.uploads_dir, str(uuid.uuid4()))
