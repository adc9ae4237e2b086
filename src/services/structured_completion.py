"""
Structured (JSON) completions with self-correcting re-prompts.

When a schema is given the model output must validate against it. A response
that fails validation is not retried blindly: the validation error and the raw
response are appended to the conversation so the next attempt can fix them.
Exhausting the attempts yields ``CompletionResult(parsed=None, error=...)``
rather than an exception, so batch callers keep one result per input.

Transport failures are a separate concern: each request goes through
``call_with_retries`` with backoff and the run's ``CancelToken``.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Protocol, Sequence, Type, TypeVar

from openai import APIStatusError, AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from config import settings
from workers.llm_parallel import map_parallel_safe
from workers.retry import CancelToken, RetryExhaustedError, RetryPolicy, call_with_retries

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
R = TypeVar("R")


@dataclass(frozen=True)
class _Rejected:
    error: APIStatusError


async def call_openai_with_retries(
    op: Callable[[], Awaitable[R]],
    policy: RetryPolicy,
    cancel: Optional[CancelToken] = None,
) -> R:
    """``call_with_retries`` for OpenAI SDK calls.

    The SDK raises on every non-2xx status; only statuses listed in
    ``policy.retryable_status_codes`` are retried, anything else is raised
    after the first attempt.
    """

    async def attempt() -> Any:
        try:
            return await op()
        except APIStatusError as e:
            if e.status_code in policy.retryable_status_codes:
                raise
            return _Rejected(e)

    result = await call_with_retries(attempt, policy, cancel)
    if isinstance(result, _Rejected):
        raise result.error
    return result


@dataclass
class CompletionResult(Generic[M]):
    parsed: Optional[M]
    raw_text: Optional[str]
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StructuredCompletionClient(Protocol):
    async def complete(
        self,
        prompt: str,
        model: str,
        schema: Optional[Type[M]] = None,
    ) -> CompletionResult: ...


def _schema_instructions(schema: Type[BaseModel]) -> str:
    return (
        "Respond with a single JSON object that validates against this JSON schema:\n"
        f"{json.dumps(schema.model_json_schema(by_alias=True), ensure_ascii=False)}"
    )


def _correction_message(error: ValidationError, raw_text: str) -> dict:
    return {
        "role": "system",
        "content": (
            f"Previous attempt failed validation:\n{error}\n"
            f"Your raw response was:\n{raw_text}\n"
            "Return corrected JSON only."
        ),
    }


class OpenAIStructuredClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        temperature: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancelToken] = None,
    ):
        self.max_retries = settings.completion_max_retries if max_retries is None else max_retries
        self.temperature = temperature
        self.policy = policy or RetryPolicy.from_settings()
        self.cancel = cancel
        self._client = client
        self._api_key = api_key
        self._base_url = base_url

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = self._api_key or settings.openai_api_key
            if not api_key:
                raise ValueError("No OpenAI API key configured")
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self._base_url or settings.openai_api_base,
                max_retries=0,
            )
        return self._client

    async def _request(self, messages: list[dict], model: str, json_mode: bool) -> str:
        request_kwargs = {"model": model, "messages": messages}
        if json_mode:
            request_kwargs["response_format"] = {"type": "json_object"}
        if self.temperature is not None:
            request_kwargs["temperature"] = self.temperature

        client = self.client
        response = await call_openai_with_retries(
            lambda: client.chat.completions.create(**request_kwargs),
            self.policy,
            self.cancel,
        )
        return response.choices[0].message.content or ""

    async def complete(
        self,
        prompt: str,
        model: str,
        schema: Optional[Type[M]] = None,
    ) -> CompletionResult[M]:
        messages = [{"role": "user", "content": prompt}]
        if schema is not None:
            messages.insert(0, {"role": "system", "content": _schema_instructions(schema)})

        last = CompletionResult(parsed=None, raw_text=None, error=RuntimeError("No attempt made"))
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            try:
                raw_text = await self._request(messages, model, json_mode=schema is not None)
            except (RetryExhaustedError, OpenAIError) as e:
                logger.error(f"Completion with {model} failed: {e}")
                return CompletionResult(parsed=None, raw_text=None, error=e)

            if schema is None:
                return CompletionResult(parsed=None, raw_text=raw_text)

            try:
                parsed = schema.model_validate_json(raw_text)
            except ValidationError as e:
                last = CompletionResult(parsed=None, raw_text=raw_text, error=e)
                logger.warning(
                    f"Completion attempt {attempt + 1}/{attempts} did not match {schema.__name__}: "
                    f"{e.error_count()} errors"
                )
                messages = [*messages, {"role": "assistant", "content": raw_text}, _correction_message(e, raw_text)]
                continue

            return CompletionResult(parsed=parsed, raw_text=raw_text)

        logger.error(f"Completion failed after {attempts} attempts: {last.error}")
        return last


async def complete_many(
    client: StructuredCompletionClient,
    prompts: Sequence[str],
    model: str,
    schema: Type[M],
    max_workers: Optional[int] = None,
) -> list[Optional[M]]:
    """Parsed result per prompt, ``None`` where the completion failed."""

    async def one(prompt: str) -> Optional[M]:
        result = await client.complete(prompt, model, schema)
        return result.parsed

    workers = settings.llm_concurrency if max_workers is None else max_workers
    return await map_parallel_safe(prompts, workers, one, fallback=None, cancel=getattr(client, "cancel", None))
