"""
Resumable five-stage audit pipeline.

    context -> keywordRecords -> enrichedKeywords -> audit -> enrichedAudit

Each stage either reuses its value from the checkpoint or computes it from the
in-memory outputs of the stages before it, then the whole checkpoint is saved.
A failing stage aborts the run and leaves the checkpoint at the last completed
stage, so running again with the same checkpoint resumes from there.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar, Union

from config import settings
from models.checkpoint import CheckpointSnapshot, CheckpointStore
from models.domain import Stage
from models.schemas import (
    AspectSentiment,
    AuditRecord,
    Brand,
    CategorizedSource,
    EnrichedAuditRecord,
    EnrichedKeyword,
    EnrichedSource,
    Entity,
    FlaggedBrand,
    KeywordLabels,
    KeywordRecord,
    ModelResponse,
    PipelineContext,
)
from services.brand_matching import BrandMatcher
from services.context_import import import_context
from services.source_enrichment import enrich_sources, ranked_brands_in_sources
from workers.retry import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

SeedGroup = Union[List[str], str]

DEDUP_COLUMNS = (
    "avg_monthly_searches",
    "competition",
    "competition_index",
    "average_cpc",
    "low_top_of_page_bid",
    "high_top_of_page_bid",
    "search_volume_growth_yoy",
)

STAGE_LABELS = {
    Stage.CONTEXT: "context",
    Stage.KEYWORDS: "keywords",
    Stage.ENRICHED_KEYWORDS: "enriched keywords",
    Stage.AUDIT: "audit",
    Stage.ENRICHED_AUDIT: "enriched audit",
}


@dataclass(frozen=True)
class AuditConfig:
    brand: str
    sector: str
    language_code: str
    models: Tuple[str, ...] = ("google/ai-overview",)
    country_code: Optional[str] = None
    num_personas: int = 5
    generate_ideas_from_seeds: bool = True

    def __post_init__(self):
        for name in ("brand", "sector", "language_code"):
            if not getattr(self, name) or not getattr(self, name).strip():
                raise ValueError(f"{name} must not be empty")
        object.__setattr__(self, "models", tuple(self.models))
        if not self.models:
            raise ValueError("at least one model is required")
        if self.num_personas < 1:
            raise ValueError("num_personas must be >= 1")


@dataclass(frozen=True)
class StageConfig:
    sample_size: Optional[int] = 400
    checkpoint_path: Optional[str] = None
    wizard_export_path: Optional[str] = None
    seed: Optional[int] = None

    def __post_init__(self):
        if self.sample_size is not None and self.sample_size < 0:
            raise ValueError("sample_size must be >= 0")

    @classmethod
    def from_settings(cls, **overrides: Any) -> "StageConfig":
        values = {"sample_size": settings.sample_size, "checkpoint_path": settings.checkpoint_path}
        values.update(overrides)
        return cls(**values)


class AuditCollaborators(Protocol):
    async def generate_context(self, config: AuditConfig) -> PipelineContext: ...

    async def expand_keywords(self, seeds: Sequence[SeedGroup], config: AuditConfig) -> List[List[KeywordRecord]]: ...

    async def label_keywords(self, keywords: Sequence[str], context: PipelineContext) -> List[KeywordLabels]: ...

    async def translate_keywords(self, keywords: Sequence[str], language: str) -> List[Optional[str]]: ...

    async def query_model(self, prompts: Sequence[str], model: str, country: Optional[str] = None) -> List[ModelResponse]: ...

    async def categorize_sources(self, source_lists: Sequence[Sequence[EnrichedSource]]) -> List[List[CategorizedSource]]: ...

    async def aspect_sentiments(self, answers: Sequence[str], brand: Brand) -> List[List[AspectSentiment]]: ...

    async def extract_entities(self, answers: Sequence[str]) -> List[List[Entity]]: ...

    async def purchase_probabilities(self, answers: Sequence[str]) -> List[Optional[float]]: ...


def _check_length(name: str, values: Sequence[Any], expected: int) -> None:
    if len(values) != expected:
        raise ValueError(f"{name} returned {len(values)} results for {expected} inputs")


def collect_seed_keywords(context: PipelineContext) -> List[SeedGroup]:
    """Seeds for keyword expansion.

    Explicit seed keywords win. Otherwise: own-brand portfolio seeds, persona
    seeds, funnel category seeds, competitor portfolio seeds, custom keywords.
    """
    if context.seed_keywords:
        return list(context.seed_keywords)

    def portfolio_seeds(competitor: bool) -> List[SeedGroup]:
        return [
            list(product.keyword_seeds)
            for brand in context.brands
            if brand.is_competitor == competitor
            for product in brand.portfolio
            if product.keyword_seeds
        ]

    persona_seeds: List[SeedGroup] = [seed for p in context.personas for seed in p.keyword_seeds]
    funnel_seeds: List[SeedGroup] = [
        list(category.keyword_seeds) for _, category in context.funnel.iter_categories() if category.keyword_seeds
    ]
    return [
        *portfolio_seeds(competitor=False),
        *persona_seeds,
        *funnel_seeds,
        *portfolio_seeds(competitor=True),
        *context.custom_keywords,
    ]


def merge_keywords(groups: Iterable[Sequence[KeywordRecord]]) -> List[KeywordRecord]:
    """Concatenate keyword groups, dropping repeats.

    A keyword already seen is dropped. So is a record whose metric columns all
    equal an earlier record's, unless every metric is empty.
    """
    seen_keywords: set = set()
    seen_metrics: set = set()
    empty_metrics = (None,) * len(DEDUP_COLUMNS)
    merged: List[KeywordRecord] = []

    for group in groups:
        for record in group:
            if record.keyword in seen_keywords:
                continue
            seen_keywords.add(record.keyword)

            metrics = tuple(getattr(record, column) for column in DEDUP_COLUMNS)
            if metrics != empty_metrics:
                if metrics in seen_metrics:
                    continue
                seen_metrics.add(metrics)

            merged.append(record)
    return merged


def sample_records(records: Sequence[T], n: int, rng: Optional[random.Random] = None) -> List[T]:
    if n >= len(records):
        return list(records)
    shuffled = list(records)
    (rng or random.Random()).shuffle(shuffled)
    return shuffled[:n]


def enrich_keyword_records(records: Sequence[KeywordRecord], labels: Sequence[KeywordLabels]) -> List[EnrichedKeyword]:
    _check_length("label_keywords", labels, len(records))
    return [
        EnrichedKeyword.model_validate({**record.to_json(), **label.model_dump(by_alias=True, exclude_none=True)})
        for record, label in zip(records, labels)
    ]


async def audit_prompts(
    collaborators: AuditCollaborators,
    prompts: Sequence[str],
    config: AuditConfig,
    brands: Sequence[FlaggedBrand],
) -> List[AuditRecord]:
    """Query every model with every prompt and locate brands in answers and sources."""
    responses: List[ModelResponse] = []
    for model in config.models:
        model_responses = await collaborators.query_model(prompts, model, config.country_code)
        _check_length(f"query_model({model})", model_responses, len(prompts))
        responses.extend(model_responses)

    matcher = BrandMatcher(brands)
    source_lists = [enrich_sources(r.sources, brands, matcher=matcher) for r in responses]
    rankings = ranked_brands_in_sources(source_lists)

    return [
        AuditRecord(
            prompt=response.prompt,
            model=response.model,
            answer=response.answer,
            sources=sources,
            search_queries=response.search_queries,
            ranked_brands_in_answer=matcher.rank(response.answer),
            ranked_brands_in_source_titles=ranking.mentioned,
            ranked_brands_in_source_domains=ranking.linked,
        )
        for response, sources, ranking in zip(responses, source_lists, rankings)
    ]


async def enrich_audit(
    collaborators: AuditCollaborators,
    records: Sequence[AuditRecord],
    own_brand: Optional[Brand],
    brands: Sequence[FlaggedBrand],
) -> List[EnrichedAuditRecord]:
    answers = [r.answer for r in records]

    categorized = await collaborators.categorize_sources([r.sources for r in records])
    _check_length("categorize_sources", categorized, len(records))

    if own_brand is not None:
        sentiments = await collaborators.aspect_sentiments(answers, own_brand)
        _check_length("aspect_sentiments", sentiments, len(records))
    else:
        logger.warning("No own brand in context, skipping aspect sentiment")
        sentiments = [[] for _ in records]

    entities = await collaborators.extract_entities(answers)
    _check_length("extract_entities", entities, len(records))

    probabilities = await collaborators.purchase_probabilities(answers)
    _check_length("purchase_probabilities", probabilities, len(records))

    matcher = BrandMatcher(brands)
    return [
        EnrichedAuditRecord(
            **record.model_dump(exclude={"sources", "ranked_brands_in_answer"}),
            sources=categorized[i],
            ranked_brands_in_answer=matcher.rank(record.answer, entities[i]),
            sentiments=sentiments[i],
            entities=entities[i],
            purchase_probability=probabilities[i],
        )
        for i, record in enumerate(records)
    ]


def merge_results(
    enriched_keywords: Sequence[EnrichedKeyword],
    enriched_audit: Sequence[EnrichedAuditRecord],
) -> List[Dict[str, Any]]:
    return [
        {**keyword.to_json(), **(enriched_audit[i].to_json() if i < len(enriched_audit) else {})}
        for i, keyword in enumerate(enriched_keywords)
    ]


@dataclass
class RunStats:
    computed: List[Stage] = field(default_factory=list)
    reused: List[Stage] = field(default_factory=list)


class AuditPipeline:
    def __init__(
        self,
        collaborators: AuditCollaborators,
        config: AuditConfig,
        stages: Optional[StageConfig] = None,
        store: Optional[CheckpointStore] = None,
        cancel: Optional[CancelToken] = None,
        rng: Optional[random.Random] = None,
    ):
        self.collaborators = collaborators
        self.config = config
        self.stages = stages or StageConfig()
        self.store = store or CheckpointStore(self.stages.checkpoint_path)
        self.cancel = cancel
        self.rng = rng or random.Random(self.stages.seed)
        self.snapshot = CheckpointSnapshot()
        self.stats = RunStats()

    def _persist(self) -> None:
        self.store.save(self.snapshot)

    async def _stage(self, stage: Stage, compute: Callable[[], Awaitable[T]]) -> T:
        label = STAGE_LABELS[stage]
        if self.snapshot.has(stage):
            logger.info(f"Using cached {label}...")
            self.stats.reused.append(stage)
            return self.snapshot.get(stage)

        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

        logger.info(f"Computing {label}...")
        start = time.time()
        value = await compute()
        self.snapshot.set(stage, value)
        self._persist()
        self.stats.computed.append(stage)
        logger.info(f"Finished {label} in {time.time() - start:.1f}s")
        return value

    def _load(self) -> None:
        self.snapshot = self.store.load()

        wizard_path = self.stages.wizard_export_path
        if wizard_path is not None:
            logger.info(f"Importing wizard context from {wizard_path}...")
            self.snapshot.set(Stage.CONTEXT, import_context(wizard_path))
            self._persist()

    async def _keywords(self, context: PipelineContext) -> List[KeywordRecord]:
        seeds = collect_seed_keywords(context)
        logger.info(f"Expanding {len(seeds)} seed keywords...")
        groups = await self.collaborators.expand_keywords(seeds, self.config)
        records = merge_keywords(groups)
        logger.info(f"Generated {len(records)} unique keywords")

        sample_size = self.stages.sample_size
        if sample_size is not None and sample_size < len(records):
            logger.info(f"Sampling to {sample_size} keywords for audit...")
            records = sample_records(records, sample_size, self.rng)
        return records

    async def _enriched_keywords(self, records: List[KeywordRecord], context: PipelineContext) -> List[EnrichedKeyword]:
        labels = await self.collaborators.label_keywords([r.keyword for r in records], context)
        return enrich_keyword_records(records, labels)

    async def _audit(self, enriched_keywords: List[EnrichedKeyword], context: PipelineContext) -> List[AuditRecord]:
        keywords = [k.keyword for k in enriched_keywords]
        logger.info(f"Translating {len(keywords)} keywords into prompts...")
        translated = await self.collaborators.translate_keywords(keywords, self.config.language_code)
        _check_length("translate_keywords", translated, len(keywords))
        prompts = [p or "" for p in translated]
        return await audit_prompts(self.collaborators, prompts, self.config, context.brands)

    async def run(self) -> List[Dict[str, Any]]:
        self._load()

        context = await self._stage(Stage.CONTEXT, lambda: self.collaborators.generate_context(self.config))
        records = await self._stage(Stage.KEYWORDS, lambda: self._keywords(context))
        enriched_keywords = await self._stage(Stage.ENRICHED_KEYWORDS, lambda: self._enriched_keywords(records, context))
        audit = await self._stage(Stage.AUDIT, lambda: self._audit(enriched_keywords, context))
        enriched_audit = await self._stage(
            Stage.ENRICHED_AUDIT,
            lambda: enrich_audit(self.collaborators, audit, context.own_brand, context.brands),
        )

        return merge_results(enriched_keywords, enriched_audit)
