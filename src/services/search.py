"""
Answer engines queried during the audit.

Every client returns a ``SearchResult``. Unrecoverable provider failures are
logged and turned into the empty result so batch callers always get one result
per prompt. Only cancellation escapes.
"""

import logging
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence

import httpx
from openai import AsyncOpenAI, OpenAIError

from config import settings
from models.schemas import ModelResponse, SearchResult, Source
from services.structured_completion import call_openai_with_retries
from services.urls import extract_domain
from workers.llm_parallel import map_parallel
from workers.retry import CancelToken, RetryExhaustedError, RetryPolicy, call_with_retries

logger = logging.getLogger(__name__)

HASDATA_CONCURRENCY = 29
HASDATA_RETRY_POLICY = RetryPolicy(
    max_retries=3,
    initial_delay=1.0,
    max_delay=8.0,
    backoff_multiplier=2.0,
    retryable_status_codes=frozenset({429, 500}),
)
MAX_ANSWER_CHARS = 16000

HASDATA_ERRORS = {
    401: "Invalid API key",
    403: "API credits exhausted",
    404: "Page not found",
}


class ProviderError(RuntimeError):
    def __init__(self, provider: str, status_code: int, message: str):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider} API error ({status_code}): {message}")


class SearchClient(Protocol):
    async def search(self, prompt: str, country: Optional[str] = None) -> SearchResult: ...

    async def search_batch(self, prompts: Sequence[str], country: Optional[str] = None) -> List[SearchResult]: ...


_CSS_ROOT = re.compile(r":root\{[^}]*\}(?:@supports[^}]*\{[^}]*\{[^}]*\}\})?(?:\.[a-zA-Z0-9_-]+\{[^}]*\})*\.?")
_CSS_SUPPORTS = re.compile(r"@supports[^{]*\{(?:[^{}]|\{[^}]*\})*\}")
_CSS_CLASS_RUN = re.compile(r"(?:\.[a-zA-Z0-9_-]+\{[^}]*\}){3,}")


def _remove_css_chunks(text: str) -> str:
    if not text:
        return ""
    text = _CSS_ROOT.sub("", text)
    text = _CSS_SUPPORTS.sub("", text)
    return _CSS_CLASS_RUN.sub("", text)


def clean_text(text: str) -> str:
    if not text:
        return ""
    text = _remove_css_chunks(text).replace("\u00a0", " ")
    text = re.sub(r"[ \t]+", " ", text)

    cleaned: List[str] = []
    for line in (line.strip() for line in text.split("\n")):
        # keep at most one blank line in a row
        if line or (cleaned and cleaned[-1]):
            cleaned.append(line)
    return "\n".join(cleaned).strip()


def _iter_list_items(items: List[Dict[str, Any]], indent: int = 0) -> Iterator[str]:
    prefix = "  " * indent + "- "
    for item in items:
        title = item.get("title") or ""
        snippet = item.get("snippet") or ""
        if title and snippet and title.endswith(":"):
            line = f"{title} {snippet}".strip()
        else:
            line = " ".join(p for p in (title, snippet) if p).strip()
        if line:
            yield prefix + clean_text(line)
        if isinstance(item.get("list"), list):
            yield from _iter_list_items(item["list"], indent + 1)


def _format_table(block: Dict[str, Any]) -> str:
    rows = block.get("rows") or []
    if not rows:
        return ""
    header = [_remove_css_chunks(cell) for cell in rows[0]]
    lines = ["| " + " | ".join(header) + " |", "| " + " | ".join("---" for _ in header) + " |"]
    for row in rows[1:]:
        lines.append("| " + " | ".join(_remove_css_chunks(cell) for cell in row) + " |")
    return "\n".join(lines)


def _format_code(block: Dict[str, Any]) -> str:
    snippet = block.get("snippet") or ""
    if not snippet:
        return ""
    language = block.get("language") or ""
    header = f"[Code: {language}]" if language else "[Code]"
    return f"{header}\n{snippet.strip()}"


_BLOCK_RENDERERS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    "paragraph": lambda b: clean_text(b.get("snippet") or ""),
    "list": lambda b: "\n".join(_iter_list_items(b.get("list") or [])),
    "table": _format_table,
    "code": _format_code,
}


def parse_ai_result(data: Dict[str, Any], allow_nested_overview: bool = True) -> SearchResult:
    """Flatten HasData AI text blocks into markdown-ish text and references into sources."""
    nested = (data.get("aiOverview") or {}) if allow_nested_overview else {}
    blocks = data.get("textBlocks") or nested.get("textBlocks") or []

    parts: List[str] = []
    for block in blocks:
        block_type = block.get("type") or ("paragraph" if block.get("snippet") else None)
        if not block_type or block_type == "carousel":
            continue
        renderer = _BLOCK_RENDERERS.get(block_type)
        rendered = renderer(block) if renderer else clean_text(block.get("snippet") or "")
        if rendered:
            parts.append(rendered)

    deduped = [p for i, p in enumerate(parts) if i == 0 or parts[i - 1] != p]
    answer = clean_text("\n\n".join(deduped))
    if len(answer) > MAX_ANSWER_CHARS:
        logger.warning(f"AI answer truncated to {MAX_ANSWER_CHARS} characters")
        answer = answer[:MAX_ANSWER_CHARS]

    sources = []
    for ref in data.get("references") or nested.get("references") or []:
        link = ref.get("link") or ref.get("url")
        if not link:
            continue
        title = " - ".join(p for p in (ref.get("title"), ref.get("source"), ref.get("snippet")) if p)
        sources.append(Source(title=title, url=link, domain=extract_domain(link)))

    return SearchResult(answer=answer, sources=sources)


class HasDataClient:
    provider = "HasData"
    endpoint = ""
    allow_nested_overview = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancelToken] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_workers: int = HASDATA_CONCURRENCY,
        language: Optional[str] = None,
    ):
        self._api_key = api_key
        self.base_url = (base_url or settings.hasdata_api_base).rstrip("/")
        self.policy = policy or HASDATA_RETRY_POLICY
        self.cancel = cancel
        self.http_client = http_client
        self.max_workers = max_workers
        self.language = language

    def _get_api_key(self) -> str:
        api_key = self._api_key or settings.hasdata_api_key
        if not api_key:
            raise ValueError("HASDATA_API_KEY is required")
        return api_key

    def _params(self, prompt: str, country: Optional[str]) -> Dict[str, str]:
        params = {"q": prompt}
        if country:
            params["gl"] = country.lower()
        if self.language:
            params["hl"] = self.language.lower()
        return params

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        message = HASDATA_ERRORS.get(response.status_code, response.reason_phrase)
        logger.error(f"{self.provider} API error ({response.status_code}): {message}")
        raise ProviderError(self.provider, response.status_code, message)

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        headers = {"x-api-key": self._get_api_key()}

        async def send(client: httpx.AsyncClient) -> httpx.Response:
            return await call_with_retries(
                lambda: client.get(url, params=params, headers=headers),
                self.policy,
                self.cancel,
            )

        if self.http_client is not None:
            response = await send(self.http_client)
        else:
            async with httpx.AsyncClient(timeout=120.0) as client:
                response = await send(client)

        self._raise_for_status(response)
        return response.json()

    async def _fetch(self, prompt: str, country: Optional[str]) -> SearchResult:
        content = await self._get_json(f"{self.base_url}{self.endpoint}", self._params(prompt, country))
        return parse_ai_result(content, allow_nested_overview=self.allow_nested_overview)

    async def search(self, prompt: str, country: Optional[str] = None) -> SearchResult:
        try:
            return await self._fetch(prompt, country)
        except (ProviderError, RetryExhaustedError, httpx.HTTPError, ValueError) as e:
            if self.cancel is not None and self.cancel.cancelled:
                raise
            logger.error(f"{self.provider} request for {prompt!r} failed: {e}")
            return SearchResult.empty()

    async def search_batch(self, prompts: Sequence[str], country: Optional[str] = None) -> List[SearchResult]:
        return await map_parallel(prompts, self.max_workers, lambda p: self.search(p, country))


class HasDataAIOClient(HasDataClient):
    """Google AI Overviews from the HasData SERP endpoint."""

    provider = "HasData AIO"
    endpoint = "/scrape/google/serp"

    async def _fetch(self, prompt: str, country: Optional[str]) -> SearchResult:
        content = await self._get_json(f"{self.base_url}{self.endpoint}", self._params(prompt, country))
        overview = content.get("aiOverview") or {}
        # the overview is sometimes deferred behind a second request
        if overview.get("pageToken") and overview.get("hasdataLink"):
            content = await self._get_json(overview["hasdataLink"])
            overview = content.get("aiOverview") or {}
        return parse_ai_result(overview, allow_nested_overview=True)


class HasDataAIModeClient(HasDataClient):
    provider = "HasData AI Mode"
    endpoint = "/scrape/google/ai-mode"
    allow_nested_overview = False


class OpenAIWebSearchClient:
    """Answers from an OpenAI model with the web search tool enabled."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancelToken] = None,
        client: Optional[AsyncOpenAI] = None,
        max_workers: Optional[int] = None,
    ):
        self.model = model
        self.policy = policy or RetryPolicy.from_settings()
        self.cancel = cancel
        self.max_workers = max_workers or settings.llm_concurrency
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

    @staticmethod
    def _parse_response(response: Any) -> SearchResult:
        sources: List[Source] = []
        seen = set()
        for item in getattr(response, "output", None) or []:
            if getattr(item, "type", None) != "message":
                continue
            for content in getattr(item, "content", None) or []:
                for annotation in getattr(content, "annotations", None) or []:
                    if getattr(annotation, "type", None) != "url_citation" or annotation.url in seen:
                        continue
                    seen.add(annotation.url)
                    sources.append(
                        Source(
                            title=getattr(annotation, "title", "") or "",
                            url=annotation.url,
                            domain=extract_domain(annotation.url),
                            cited=True,
                        )
                    )
        return SearchResult(answer=getattr(response, "output_text", "") or "", sources=sources)

    async def search(self, prompt: str, country: Optional[str] = None) -> SearchResult:
        tool: Dict[str, Any] = {"type": "web_search_preview"}
        if country:
            tool["user_location"] = {"type": "approximate", "country": country.upper()}

        try:
            client = self.client
            response = await call_openai_with_retries(
                lambda: client.responses.create(model=self.model, input=prompt, tools=[tool]),
                self.policy,
                self.cancel,
            )
        except (RetryExhaustedError, OpenAIError, ValueError) as e:
            if self.cancel is not None and self.cancel.cancelled:
                raise
            logger.error(f"OpenAI web search with {self.model} failed for {prompt!r}: {e}")
            return SearchResult.empty()
        return self._parse_response(response)

    async def search_batch(self, prompts: Sequence[str], country: Optional[str] = None) -> List[SearchResult]:
        return await map_parallel(prompts, self.max_workers, lambda p: self.search(p, country))


class ModelRouter:
    """Maps audit model identifiers to the search client that answers for them.

    Built-in identifiers are ``google/ai-overview``, ``google/ai-mode`` and
    ``openai/<model>``. Anything else must be registered explicitly.
    """

    def __init__(self, cancel: Optional[CancelToken] = None, language: Optional[str] = None):
        self.cancel = cancel
        self.language = language
        self._clients: Dict[str, SearchClient] = {}

    def register(self, model: str, client: SearchClient) -> None:
        self._clients[model] = client

    def _build(self, model: str) -> SearchClient:
        if model == "google/ai-overview":
            return HasDataAIOClient(cancel=self.cancel, language=self.language)
        if model == "google/ai-mode":
            return HasDataAIModeClient(cancel=self.cancel, language=self.language)
        if model.startswith("openai/"):
            return OpenAIWebSearchClient(model.split("/", 1)[1], cancel=self.cancel)
        raise ValueError(f"Unsupported model: {model}")

    def resolve(self, model: str) -> SearchClient:
        if model not in self._clients:
            self._clients[model] = self._build(model)
        return self._clients[model]

    async def query(self, prompts: Sequence[str], model: str, country: Optional[str] = None) -> List[ModelResponse]:
        client = self.resolve(model)
        logger.info(f"Querying {model} with {len(prompts)} prompts")
        results = await client.search_batch(prompts, country)
        return [
            ModelResponse(prompt=prompt, model=model, **result.model_dump())
            for prompt, result in zip(prompts, results)
        ]
