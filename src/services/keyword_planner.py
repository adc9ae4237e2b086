import base64
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

import httpx

from config import settings
from models.schemas import KeywordRecord
from services.search import ProviderError
from workers.llm_parallel import map_parallel
from workers.retry import CancelToken, RetryPolicy, call_with_retries

logger = logging.getLogger(__name__)

SeedGroup = Union[List[str], str]

LOCATION_CODES = {
    "us": 2840,
    "gb": 2826,
    "uk": 2826,
    "de": 2276,
    "fr": 2250,
    "es": 2724,
    "it": 2380,
    "nl": 2528,
    "pt": 2620,
    "mx": 2484,
    "au": 2036,
    "ca": 2124,
    "in": 2356,
}

IDEAS_ENDPOINT = "keywords_data/google_ads/keywords_for_keywords/live"
VOLUME_ENDPOINT = "keywords_data/google_ads/search_volume/live"
MAX_SEEDS_PER_REQUEST = 20
OK_STATUS = 20000


class KeywordPlanner(Protocol):
    async def expand(
        self,
        seed_groups: Sequence[SeedGroup],
        language: str,
        country: Optional[str] = None,
        ideas_from_seeds: bool = True,
    ) -> List[List[KeywordRecord]]: ...


def get_location_code(country: Optional[str]) -> Optional[int]:
    if not country:
        return None
    return LOCATION_CODES.get(country.lower())


def trend_pct(volumes: Sequence[int], months: int) -> Optional[float]:
    """Percentage change between the value ``months - 1`` months ago and the latest one."""
    if len(volumes) < months:
        return None
    end = volumes[-1]
    start = volumes[-months]
    return (end - start) / (start or 1) * 100


def _monthly_volumes(item: Dict[str, Any]) -> List[int]:
    monthly = [m for m in item.get("monthly_searches") or [] if m.get("search_volume") is not None]
    monthly.sort(key=lambda m: (m.get("year", 0), m.get("month", 0)))
    return [m["search_volume"] for m in monthly]


def to_keyword_record(item: Dict[str, Any]) -> KeywordRecord:
    volumes = _monthly_volumes(item)
    data = {
        "keyword": item.get("keyword"),
        "avgMonthlySearches": item.get("search_volume"),
        "competition": item.get("competition"),
        "competitionIndex": item.get("competition_index"),
        "averageCpc": item.get("cpc"),
        "lowTopOfPageBid": item.get("low_top_of_page_bid"),
        "highTopOfPageBid": item.get("high_top_of_page_bid"),
        "searchVolumeGrowthYoy": trend_pct(volumes, 12) if len(volumes) >= 12 else None,
    }
    if len(volumes) >= 3:
        data["searchVolumeGrowth3m"] = trend_pct(volumes, 3)
    if volumes:
        data["searchVolume"] = volumes
    return KeywordRecord.model_validate(data)


def _chunks(seeds: List[str], size: int) -> List[List[str]]:
    return [seeds[i : i + size] for i in range(0, len(seeds), size)]


class DataForSEOKeywordPlanner:
    """Google Ads keyword ideas and metrics through DataForSEO."""

    def __init__(
        self,
        login: Optional[str] = None,
        password: Optional[str] = None,
        base_url: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancelToken] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_workers: int = 5,
    ):
        self.login = login or settings.dataforseo_login
        self.password = password or settings.dataforseo_password
        self.base_url = (base_url or settings.dataforseo_api_base).rstrip("/")
        self.policy = policy or RetryPolicy.from_settings()
        self.cancel = cancel
        self.http_client = http_client
        self.max_workers = max_workers

    @property
    def _auth_header(self) -> str:
        if not self.login or not self.password:
            raise ValueError("DataForSEO login and password are required")
        encoded = base64.b64encode(f"{self.login}:{self.password}".encode()).decode()
        return f"Basic {encoded}"

    async def _post(self, endpoint: str, payload: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/{endpoint}"
        headers = {"Authorization": self._auth_header, "Content-Type": "application/json"}

        async def send(client: httpx.AsyncClient) -> httpx.Response:
            return await call_with_retries(lambda: client.post(url, json=payload, headers=headers), self.policy, self.cancel)

        if self.http_client is not None:
            response = await send(self.http_client)
        else:
            async with httpx.AsyncClient(timeout=120.0) as client:
                response = await send(client)

        if not response.is_success:
            raise ProviderError("DataForSEO", response.status_code, response.reason_phrase)

        body = response.json()
        if body.get("status_code") != OK_STATUS:
            raise ProviderError("DataForSEO", body.get("status_code", 0), body.get("status_message", "Unknown error"))

        items: List[Dict[str, Any]] = []
        for task in body.get("tasks") or []:
            if task.get("status_code") != OK_STATUS:
                logger.warning(f"DataForSEO task failed: {task.get('status_message')}")
                continue
            items.extend(task.get("result") or [])
        return items

    async def _expand_group(
        self,
        seeds: List[str],
        language: str,
        country: Optional[str],
        ideas_from_seeds: bool,
    ) -> List[KeywordRecord]:
        if not seeds:
            return []
        endpoint = IDEAS_ENDPOINT if ideas_from_seeds else VOLUME_ENDPOINT
        chunk_size = MAX_SEEDS_PER_REQUEST if ideas_from_seeds else 1000
        location_code = get_location_code(country)

        records: List[KeywordRecord] = []
        for chunk in _chunks(seeds, chunk_size):
            task: Dict[str, Any] = {"keywords": chunk, "language_code": language.lower()}
            if location_code is not None:
                task["location_code"] = location_code
            for item in await self._post(endpoint, [task]):
                if item.get("keyword"):
                    records.append(to_keyword_record(item))
        return records

    async def expand(
        self,
        seed_groups: Sequence[SeedGroup],
        language: str,
        country: Optional[str] = None,
        ideas_from_seeds: bool = True,
    ) -> List[List[KeywordRecord]]:
        groups = [[g] if isinstance(g, str) else list(g) for g in seed_groups]
        groups = [[s for s in g if s and s.strip()] for g in groups]
        logger.info(f"Expanding {len(groups)} seed groups via DataForSEO")
        return await map_parallel(
            groups,
            self.max_workers,
            lambda seeds: self._expand_group(seeds, language, country, ideas_from_seeds),
        )
