# src/Stockwright/gateway.py

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, cast

import httpx
import openai
import orjson
import pydantic
import structlog
from openai import AsyncOpenAI

from Stockwright.config import Settings
from Stockwright.errors import MalformedResponse, UpstreamError, UpstreamTimeout
from Stockwright.llm_utils import extract_first_json
from Stockwright.metrics import inc_counter, observe_histogram

log = structlog.get_logger()

T = TypeVar("T", bound=pydantic.BaseModel)

Message = dict[str, str]


@dataclass(frozen=True)
class CompletionOptions:
    temperature: float = 0.1
    max_output_tokens: int = 300
    timeout_ms: int = 15_000

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompletionOptions":
        return cls(
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_output_tokens,
            timeout_ms=settings.llm_timeout_ms,
        )


class CompletionGateway(Protocol):
    async def complete(self, messages: list[Message], options: CompletionOptions) -> str:
        ...

    async def complete_structured(
        self, messages: list[Message], model: type[T], options: CompletionOptions
    ) -> T:
        ...


class LanguageModelGateway:
    """
    The one network-facing dependency of the pipeline.

    Two transports, picked by ``llm_api_provider``:
    1. 'openai': the official `openai` client against any OpenAI-compatible
                 ``/chat/completions`` endpoint (x.ai, OpenAI, Groq, ...).
    2. 'ollama': a direct `httpx` client posting to ``/api/chat``.

    Every failure is normalized to ``UpstreamTimeout``, ``UpstreamError`` or
    ``MalformedResponse``. There are no retries here; callers own fallback.
    Cancelling the awaiting task cancels the HTTP request as well.
    """

    def __init__(self, settings: Settings):
        self.provider = settings.llm_api_provider
        self.model_name = settings.llm_model_name
        self.default_options = CompletionOptions.from_settings(settings)

        if not settings.llm_api_url:
            raise ValueError("LanguageModelGateway requires llm_api_url to be set.")
        self._client: Any

        if self.provider == "ollama":
            base = settings.llm_api_url.rstrip("/")
            if base.endswith("/api/chat"):
                self.api_url = base
            elif base.endswith("/api"):
                self.api_url = f"{base}/chat"
            else:
                self.api_url = f"{base}/api/chat"
            headers = {"Content-Type": "application/json"}
            # Per-call deadlines come from CompletionOptions; this is only a ceiling
            self._client = httpx.AsyncClient(timeout=120.0, headers=headers)

        elif self.provider == "openai":
            self.api_url = settings.llm_api_url.rstrip("/")
            if not self.api_url.endswith("/v1"):
                self.api_url = f"{self.api_url}/v1"
            api_key = settings.llm_api_key.get_secret_value() if settings.llm_api_key else None
            self._client = AsyncOpenAI(
                base_url=self.api_url,
                # The SDK refuses to build without a key; local servers ignore it
                api_key=api_key or "unset",
                max_retries=0,
                timeout=120.0,
            )
        else:
            raise ValueError(f"Unsupported LLM provider: {self.provider}")

        log.info(
            "gateway.initialized",
            provider=self.provider,
            model=self.model_name,
            url=self.api_url,
        )

    async def complete(
        self, messages: list[Message], options: CompletionOptions | None = None
    ) -> str:
        """Send the conversation and return the model's text reply."""
        opts = options or self.default_options
        log.info(
            "gateway.call.initiated",
            provider=self.provider,
            model=self.model_name,
            prompt_approx_chars=sum(len(m.get("content", "")) for m in messages),
            timeout_ms=opts.timeout_ms,
        )
        start = time.perf_counter()
        status = "success"
        try:
            async with asyncio.timeout(opts.timeout_ms / 1000):
                content = await self._send(messages, opts)
            if not content or not content.strip():
                raise MalformedResponse("language model returned empty content")
            return content.strip()
        except TimeoutError as e:
            status = "timeout"
            raise UpstreamTimeout(opts.timeout_ms) from e
        except UpstreamTimeout:
            status = "timeout"
            raise
        except UpstreamError as e:
            status = "upstream_error"
            log.error("gateway.call.failed", status_code=e.status, body_preview=e.body[:200])
            raise
        except MalformedResponse:
            status = "malformed"
            raise
        except asyncio.CancelledError:
            status = "cancelled"
            raise
        finally:
            dur_ms = math.trunc((time.perf_counter() - start) * 1000)
            inc_counter(f"gateway.call.{status}")
            observe_histogram("gateway.call.ms", dur_ms)
            log.info(
                "gateway.call.completed",
                provider=self.provider,
                model=self.model_name,
                duration_ms=dur_ms,
                status=status,
            )

    async def complete_structured(
        self,
        messages: list[Message],
        model: type[T],
        options: CompletionOptions | None = None,
    ) -> T:
        """Like ``complete`` but parse the first JSON object in the reply into ``model``."""
        text = await self.complete(messages, options)
        data = extract_first_json(text)
        if data is None:
            inc_counter("gateway.structured.no_json")
            log.warning("gateway.structured.no_json", raw_preview=text[:200])
            raise MalformedResponse("no JSON object found in model output", text)
        try:
            return model.model_validate(data)
        except pydantic.ValidationError as e:
            inc_counter("gateway.structured.invalid")
            log.warning(
                "gateway.structured.invalid",
                model=model.__name__,
                errors=e.error_count(),
                raw_preview=text[:200],
            )
            raise MalformedResponse(f"model output does not match {model.__name__}", text) from e

    async def _send(self, messages: list[Message], opts: CompletionOptions) -> str | None:
        if isinstance(self._client, httpx.AsyncClient):  # Ollama provider
            data = {
                "model": self.model_name,
                "messages": messages,
                "stream": False,
                "options": {
                    "temperature": opts.temperature,
                    "num_predict": opts.max_output_tokens,
                },
            }
            try:
                resp = await self._client.post(self.api_url, content=orjson.dumps(data))
            except httpx.TimeoutException as e:
                raise UpstreamTimeout(opts.timeout_ms) from e
            except httpx.RequestError as e:
                raise UpstreamError(None, str(e)) from e
            if resp.status_code >= 400:
                raise UpstreamError(resp.status_code, resp.text)
            try:
                result = resp.json()
            except ValueError as e:
                raise MalformedResponse("language model reply is not JSON", resp.text) from e
            content = (result.get("message") or {}).get("content")
            if isinstance(content, dict | list):
                return orjson.dumps(content).decode()
            return content

        # OpenAI-compatible provider
        try:
            oa_resp = await self._client.chat.completions.create(
                model=self.model_name,
                messages=cast(Any, messages),
                temperature=opts.temperature,
                max_tokens=opts.max_output_tokens,
            )
        except openai.APITimeoutError as e:
            raise UpstreamTimeout(opts.timeout_ms) from e
        except openai.APIStatusError as e:
            raise UpstreamError(e.status_code, e.response.text) from e
        except openai.APIError as e:
            raise UpstreamError(None, str(e)) from e
        if not oa_resp.choices:
            raise MalformedResponse("language model reply has no choices")
        return oa_resp.choices[0].message.content

    async def close(self) -> None:
        """Release the underlying HTTP client."""
        if not getattr(self, "_client", None):
            return
        try:
            if isinstance(self._client, httpx.AsyncClient):
                await self._client.aclose()
            else:
                await self._client.close()
        finally:
            log.info("gateway.closed")
