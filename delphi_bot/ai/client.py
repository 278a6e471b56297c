from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass

import httpx

from delphi_bot.errors import SummarizationError
from delphi_bot.storage.types import SUMMARY_ERROR_PREFIX, error_summary


logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "Summarize this Delphi Digital research report directly without any introductory phrases.\n"
    "Your response MUST follow this exact format:\n"
    "[A direct, concise summary of the report's main points in 1-2 sentences, max 160 characters]\n"
    "\n"
    "Relevance: [One line on why this research matters for our ecosystem and technology stack]\n"
    "\n"
    'Do not use phrases like "Here\'s a summary" or "This report discusses".'
)

CHUNK_PROMPT = (
    "You will receive one part of a long report. Summarize only the key facts of this part "
    "in 2-4 sentences, keeping numbers, dates and conclusions."
)


@dataclass(frozen=True)
class AIConfig:
    base_url: str
    api_key: str
    model: str
    timeout_seconds: int
    max_retries: int
    prefer_chat_completions: bool
    fallback_to_responses: bool
    max_input_chars: int
    chunk_chars: int
    chunk_overlap_chars: int

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.model)


def chunk_text(text: str, chunk_chars: int, overlap_chars: int) -> list[str]:
    chunk_chars = max(2000, int(chunk_chars or 0))
    overlap = max(0, min(chunk_chars - 1, int(overlap_chars or 0)))

    chunks: list[str] = []
    start = 0
    n = len(text)
    while start < n:
        end = min(n, start + chunk_chars)
        chunks.append(text[start:end])
        if end >= n:
            break
        start = max(0, end - overlap)
    return chunks


def _chat_content(data: dict) -> str:
    choice = (data.get("choices") or [{}])[0]
    return (
        (choice.get("message") or {}).get("content")
        or (choice.get("delta") or {}).get("content")
        or ""
    )


def _responses_content(data: dict) -> str:
    content = data.get("output_text") or ""
    if content or not isinstance(data.get("output"), list):
        return content
    for item in data["output"]:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "message" and isinstance(item.get("content"), list):
            parts = [
                part.get("text") or ""
                for part in item["content"]
                if isinstance(part, dict) and part.get("type") == "output_text"
            ]
            content = "\n".join(parts).strip()
            if content:
                return content
    return ""


class OpenAICompatClient:
    """Summarizer backed by an OpenAI-compatible HTTP API.

    ``summarize`` never raises: every failure comes back as a string starting
    with ``SUMMARY_ERROR_PREFIX`` so callers can store it as-is.
    """

    def __init__(self, cfg: AIConfig, transport: httpx.AsyncBaseTransport | None = None):
        self._cfg = cfg
        self._client = httpx.AsyncClient(
            base_url=cfg.base_url.rstrip("/"),
            timeout=httpx.Timeout(cfg.timeout_seconds),
            headers={
                "Authorization": f"Bearer {cfg.api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict) -> dict:
        # Retry on transient network errors and 429/5xx
        attempts = max(0, int(self._cfg.max_retries)) + 1
        for i in range(attempts):
            try:
                resp = await self._client.post(path, json=payload)
                if resp.status_code == 429 or resp.status_code >= 500:
                    raise httpx.HTTPStatusError(
                        f"retryable status: {resp.status_code}",
                        request=resp.request,
                        response=resp,
                    )
                resp.raise_for_status()
                return resp.json()
            except (httpx.TransportError, httpx.HTTPStatusError) as e:
                retryable = not isinstance(e, httpx.HTTPStatusError) or (
                    e.response.status_code == 429 or e.response.status_code >= 500
                )
                if not retryable or i >= attempts - 1:
                    raise SummarizationError(f"{path}: {e}") from e
                # exponential backoff + jitter
                base = min(20.0, (2.0**i))
                await asyncio.sleep(base + random.uniform(0.0, 1.0))
        raise SummarizationError(f"{path}: no attempts made")

    async def summarize(self, title: str, body: str) -> str:
        if not self._cfg.configured:
            return error_summary("summarizer not configured")
        if not (body or "").strip():
            return error_summary("empty report body")

        try:
            max_chars = max(1000, int(self._cfg.max_input_chars or 0))
            if len(body) > max_chars:
                text = await self._summarize_long_text(title, body)
            else:
                text = await self._complete(SYSTEM_PROMPT, f"Title: {title}\n\nContent:\n{body}")
        except SummarizationError as e:
            logger.warning("summarize failed for %r: %s", title, e)
            return error_summary(f"summarization failed: {e}")
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("unexpected AI response for %r: %s", title, e)
            return error_summary(f"bad AI response: {e}")

        text = (text or "").strip()
        if not text:
            return error_summary("empty AI response")
        if text.startswith(SUMMARY_ERROR_PREFIX):
            # Keep the reserved prefix meaningful even if a model echoes it.
            return error_summary(f"AI response used reserved prefix: {text[:120]}")
        return text

    async def _complete(self, system: str, user: str) -> str:
        if self._cfg.prefer_chat_completions:
            try:
                return await self._chat(system, user)
            except SummarizationError:
                if not self._cfg.fallback_to_responses:
                    raise
                logger.info("chat completions failed, falling back to responses API")
                return await self._responses(system, user)
        return await self._responses(system, user)

    async def _summarize_long_text(self, title: str, body: str) -> str:
        chunks = chunk_text(body, self._cfg.chunk_chars, self._cfg.chunk_overlap_chars)
        logger.info("ai long text: %s chars split into %s chunks", len(body), len(chunks))

        partials: list[str] = []
        for idx, chunk in enumerate(chunks, start=1):
            user = f"Title: {title}\nPart: {idx}/{len(chunks)}\n\nContent:\n{chunk}"
            partials.append((await self._complete(CHUNK_PROMPT, user)).strip())

        merged = "\n".join(f"[Part {i}] {p}" for i, p in enumerate(partials, start=1))
        user = f"Title: {title}\n\nContent (condensed from {len(chunks)} parts):\n{merged}"
        return await self._complete(SYSTEM_PROMPT, user)

    async def _chat(self, system: str, user: str) -> str:
        payload = {
            "model": self._cfg.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": 0.7,
            "max_tokens": 1024,
        }
        return _chat_content(await self._post("/v1/chat/completions", payload))

    async def _responses(self, system: str, user: str) -> str:
        payload = {
            "model": self._cfg.model,
            "input": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": 0.7,
            "max_output_tokens": 1024,
        }
        return _responses_content(await self._post("/v1/responses", payload))
