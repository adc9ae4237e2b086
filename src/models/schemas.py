from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .domain import MarketPosition


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Product(CamelModel):
    name: str
    category: Optional[str] = None
    keyword_seeds: List[str] = Field(default_factory=list)


class Brand(CamelModel):
    name: str
    short_name: str
    description: str = ""
    domain: str = Field(..., min_length=1)
    sectors: List[str] = Field(default_factory=list)
    markets: List[str] = Field(default_factory=list)
    portfolio: List[Product] = Field(default_factory=list)
    market_position: Optional[MarketPosition] = None
    favicon: Optional[str] = None


class FlaggedBrand(Brand):
    is_competitor: bool = False


class BrandList(CamelModel):
    brands: List[Brand] = Field(..., min_length=1)
    explanation: str = ""


class Persona(CamelModel):
    name: str
    description: str = ""
    keyword_seeds: List[str] = Field(default_factory=list)


class PersonaList(CamelModel):
    personas: List[Persona]


class FunnelCategory(CamelModel):
    name: str
    description: str = ""
    keyword_patterns: List[str] = Field(default_factory=list)
    intent: str = ""
    keyword_seeds: List[str] = Field(default_factory=list)


class FunnelStage(CamelModel):
    stage: str
    goal: str = ""
    categories: List[FunnelCategory] = Field(default_factory=list)


class Funnel(CamelModel):
    stages: List[FunnelStage] = Field(default_factory=list)

    def iter_categories(self):
        for stage in self.stages:
            for category in stage.categories:
                yield stage, category


class KeywordSeeds(CamelModel):
    keywords: List[str]


class PipelineContext(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    brands: List[FlaggedBrand]
    personas: List[Persona] = Field(default_factory=list)
    funnel: Funnel = Field(default_factory=Funnel)
    custom_keywords: List[str] = Field(default_factory=list)
    seed_keywords: List[Union[List[str], str]] = Field(default_factory=list)

    @property
    def own_brand(self) -> Optional[FlaggedBrand]:
        return next((b for b in self.brands if not b.is_competitor), None)


class KeywordRecord(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    keyword: str
    avg_monthly_searches: Optional[int] = None
    competition: Optional[str] = None
    competition_index: Optional[float] = None
    average_cpc: Optional[float] = None
    low_top_of_page_bid: Optional[float] = None
    high_top_of_page_bid: Optional[float] = None
    search_volume_growth_yoy: Optional[float] = None


class KeywordLabels(CamelModel):
    topic: Optional[str] = None
    subtopic: Optional[str] = None
    intent: Optional[str] = None
    branded_classification: Optional[str] = None
    funnel_stage: Optional[str] = None
    funnel_category: Optional[str] = None
    persona: Optional[str] = None


class EnrichedKeyword(KeywordRecord, KeywordLabels):
    pass


class Entity(CamelModel):
    name: str
    type: str


class EntityList(CamelModel):
    entities: List[Entity] = Field(default_factory=list)


class Source(CamelModel):
    title: str = ""
    url: str
    domain: str = ""
    cited: Optional[bool] = None


class EnrichedSource(Source):
    mentioned_brands: List[str] = Field(default_factory=list)
    mentioned_competitors: List[str] = Field(default_factory=list)
    linked_brand: Optional[str] = None
    linked_competitor: Optional[str] = None


class CategorizedSource(EnrichedSource):
    category: Optional[str] = None
    subcategory: Optional[str] = None


class SearchResult(CamelModel):
    answer: str = ""
    sources: List[Source] = Field(default_factory=list)
    search_queries: List[str] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "SearchResult":
        return cls(answer="", sources=[])

    @property
    def is_empty(self) -> bool:
        return not self.answer and not self.sources


class ModelResponse(SearchResult):
    prompt: str
    model: str


class AuditRecord(CamelModel):
    prompt: str
    model: str
    answer: str = ""
    sources: List[EnrichedSource] = Field(default_factory=list)
    search_queries: List[str] = Field(default_factory=list)
    ranked_brands_in_answer: List[str] = Field(default_factory=list)
    ranked_brands_in_source_titles: List[str] = Field(default_factory=list)
    ranked_brands_in_source_domains: List[str] = Field(default_factory=list)


class AspectSentiment(CamelModel):
    aspect: str
    sentiment: str
    reason: Optional[str] = None


class AspectSentimentList(CamelModel):
    sentiments: List[AspectSentiment] = Field(default_factory=list)


class PurchaseProbability(CamelModel):
    probability: float = Field(..., ge=0.0, le=1.0)


class EnrichedAuditRecord(AuditRecord):
    sources: List[CategorizedSource] = Field(default_factory=list)
    sentiments: List[AspectSentiment] = Field(default_factory=list)
    entities: List[Entity] = Field(default_factory=list)
    purchase_probability: Optional[float] = None


class TopicGroup(CamelModel):
    topic: str
    subtopics: List[str] = Field(default_factory=list)


class TopicTaxonomy(CamelModel):
    topics: List[TopicGroup] = Field(default_factory=list)


class TranslatedPrompt(CamelModel):
    prompt: str


class SourceCategory(CamelModel):
    index: int
    category: str
    subcategory: Optional[str] = None


class SourceCategoryList(CamelModel):
    categories: List[SourceCategory] = Field(default_factory=list)
