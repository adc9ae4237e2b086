"""LLM-backed collaborators for every audit stage."""

import logging
import time
from typing import List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from config import settings
from models.schemas import (
    AspectSentiment,
    AspectSentimentList,
    Brand,
    BrandList,
    CategorizedSource,
    EnrichedSource,
    Entity,
    EntityList,
    FlaggedBrand,
    Funnel,
    KeywordLabels,
    KeywordRecord,
    KeywordSeeds,
    ModelResponse,
    PersonaList,
    PipelineContext,
    Product,
    PurchaseProbability,
    SourceCategoryList,
    TopicTaxonomy,
    TranslatedPrompt,
)
from prompts import load_prompt
from services.keyword_planner import KeywordPlanner, SeedGroup
from services.search import ModelRouter
from services.structured_completion import StructuredCompletionClient, complete_many
from services.urls import extract_domain
from workers.llm_parallel import map_parallel
from workers.pipeline import AuditConfig

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class GenerationError(RuntimeError):
    pass


class LLMAuditCollaborators:
    def __init__(
        self,
        completions: StructuredCompletionClient,
        keyword_planner: KeywordPlanner,
        router: ModelRouter,
        model: Optional[str] = None,
        mini_model: Optional[str] = None,
        max_workers: Optional[int] = None,
    ):
        self.completions = completions
        self.keyword_planner = keyword_planner
        self.router = router
        self.model = model or settings.default_model
        self.mini_model = mini_model or settings.mini_model
        self.max_workers = max_workers or settings.llm_concurrency

    async def _require(self, prompt: str, schema: Type[M], model: Optional[str] = None) -> M:
        result = await self.completions.complete(prompt, model or self.model, schema)
        if result.parsed is None:
            raise GenerationError(f"Failed to generate {schema.__name__}: {result.error}")
        return result.parsed

    async def _many(self, prompts: Sequence[str], schema: Type[M], model: Optional[str] = None) -> List[Optional[M]]:
        return await complete_many(self.completions, prompts, model or self.mini_model, schema, self.max_workers)

    async def _portfolio_seeds(self, product: Product, config: AuditConfig) -> Product:
        prompt = load_prompt(
            "portfolio_keywords",
            product_name=product.name,
            category=product.category,
            sector=config.sector,
            market=config.country_code,
            language=config.language_code,
        )
        result = await self.completions.complete(prompt, self.mini_model, KeywordSeeds)
        seeds = result.parsed.keywords if result.parsed is not None else []
        return product.model_copy(update={"keyword_seeds": seeds})

    async def _with_portfolio_seeds(self, brand: Brand, config: AuditConfig) -> Brand:
        portfolio = await map_parallel(brand.portfolio, self.max_workers, lambda p: self._portfolio_seeds(p, config))
        return brand.model_copy(update={"portfolio": portfolio, "domain": extract_domain(brand.domain)})

    async def generate_brand_info(self, config: AuditConfig) -> Brand:
        prompt = load_prompt(
            "brand_info",
            brand=config.brand,
            sector=config.sector,
            market=config.country_code,
            language=config.language_code,
        )
        brand = await self._require(prompt, Brand)
        return await self._with_portfolio_seeds(brand, config)

    async def generate_competitors(self, config: AuditConfig) -> List[Brand]:
        prompt = load_prompt(
            "competitors",
            brand=config.brand,
            sector=config.sector,
            market=config.country_code,
            language=config.language_code,
            strict=True,
        )
        competitors = await self._require(prompt, BrandList)
        return await map_parallel(competitors.brands, self.max_workers, lambda b: self._with_portfolio_seeds(b, config))

    async def generate_context(self, config: AuditConfig) -> PipelineContext:
        start = time.time()
        brand = await self.generate_brand_info(config)
        logger.info(f"Generated brand in {time.time() - start:.1f}s")

        start = time.time()
        competitors = await self.generate_competitors(config)
        logger.info(f"Generated {len(competitors)} competitors in {time.time() - start:.1f}s")

        start = time.time()
        personas = await self._require(
            load_prompt(
                "personas",
                brand=config.brand,
                sector=config.sector,
                market=config.country_code or "global",
                count=config.num_personas,
                language=config.language_code,
            ),
            PersonaList,
        )
        logger.info(f"Generated {len(personas.personas)} personas in {time.time() - start:.1f}s")

        start = time.time()
        funnel = await self._require(
            load_prompt(
                "funnel",
                sector=config.sector,
                market=config.country_code or "global",
                language=config.language_code,
            ),
            Funnel,
        )
        logger.info(f"Generated funnel in {time.time() - start:.1f}s")

        brands = [FlaggedBrand(**brand.model_dump(), is_competitor=False)]
        brands += [FlaggedBrand(**c.model_dump(), is_competitor=True) for c in competitors]
        return PipelineContext(brands=brands, personas=personas.personas, funnel=funnel)

    async def expand_keywords(self, seeds: Sequence[SeedGroup], config: AuditConfig) -> List[List[KeywordRecord]]:
        return await self.keyword_planner.expand(
            seeds,
            config.language_code,
            config.country_code,
            ideas_from_seeds=config.generate_ideas_from_seeds,
        )

    async def label_keywords(self, keywords: Sequence[str], context: PipelineContext) -> List[KeywordLabels]:
        if not keywords:
            return []

        taxonomy_result = await self.completions.complete(
            load_prompt("keyword_topics", keywords=list(keywords)), self.model, TopicTaxonomy
        )
        taxonomy = taxonomy_result.parsed or TopicTaxonomy()
        if not taxonomy.topics:
            logger.warning("No topic taxonomy generated, topics will be assigned freely")

        funnel = [(stage.stage, category.name) for stage, category in context.funnel.iter_categories()]
        personas = [p.name for p in context.personas]
        brands = [b.short_name for b in context.brands]

        prompts = [
            load_prompt(
                "keyword_labels",
                keyword=keyword,
                topics=[t.model_dump() for t in taxonomy.topics],
                funnel=funnel,
                personas=personas,
                brands=brands,
            )
            for keyword in keywords
        ]
        labels = await self._many(prompts, KeywordLabels)
        return [label or KeywordLabels() for label in labels]

    async def translate_keywords(self, keywords: Sequence[str], language: str) -> List[Optional[str]]:
        prompts = [load_prompt("translate_keyword", keyword=k, language=language) for k in keywords]
        translated = await self._many(prompts, TranslatedPrompt)
        return [t.prompt if t is not None else None for t in translated]

    async def query_model(self, prompts: Sequence[str], model: str, country: Optional[str] = None) -> List[ModelResponse]:
        return await self.router.query(prompts, model, country)

    async def categorize_sources(self, source_lists: Sequence[Sequence[EnrichedSource]]) -> List[List[CategorizedSource]]:
        async def categorize(sources: Sequence[EnrichedSource]) -> List[CategorizedSource]:
            categorized = [CategorizedSource(**s.model_dump()) for s in sources]
            if not sources:
                return categorized
            result = await self.completions.complete(
                load_prompt("categorize_sources", sources=[s.model_dump() for s in sources]),
                self.mini_model,
                SourceCategoryList,
            )
            for item in result.parsed.categories if result.parsed is not None else []:
                if 0 <= item.index < len(categorized):
                    categorized[item.index].category = item.category
                    categorized[item.index].subcategory = item.subcategory
            return categorized

        return await map_parallel(source_lists, self.max_workers, categorize)

    async def _per_answer(self, answers: Sequence[str], prompt_id: str, schema: Type[M], **kwargs) -> List[Optional[M]]:
        indices = [i for i, a in enumerate(answers) if a]
        prompts = [load_prompt(prompt_id, answer=answers[i], **kwargs) for i in indices]
        parsed = await self._many(prompts, schema)

        results: List[Optional[M]] = [None] * len(answers)
        for i, value in zip(indices, parsed):
            results[i] = value
        return results

    async def aspect_sentiments(self, answers: Sequence[str], brand: Brand) -> List[List[AspectSentiment]]:
        parsed = await self._per_answer(answers, "aspect_sentiment", AspectSentimentList, brand=brand.short_name)
        return [p.sentiments if p is not None else [] for p in parsed]

    async def extract_entities(self, answers: Sequence[str]) -> List[List[Entity]]:
        parsed = await self._per_answer(answers, "extract_entities", EntityList)
        return [p.entities if p is not None else [] for p in parsed]

    async def purchase_probabilities(self, answers: Sequence[str]) -> List[Optional[float]]:
        parsed = await self._per_answer(answers, "purchase_probability", PurchaseProbability)
        return [p.probability if p is not None else None for p in parsed]
