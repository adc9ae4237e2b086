from models.domain import (
    STAGE_ORDER,
    DomainStats,
    MarketPosition,
    Stage,
    UrlStats,
    VisibilityRecord,
    VisibilityStats,
)
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
    Funnel,
    FunnelCategory,
    FunnelStage,
    KeywordLabels,
    KeywordRecord,
    ModelResponse,
    Persona,
    PipelineContext,
    Product,
    SearchResult,
    Source,
)

__all__ = [
    "STAGE_ORDER",
    "Stage",
    "MarketPosition",
    "VisibilityRecord",
    "VisibilityStats",
    "UrlStats",
    "DomainStats",
    "AspectSentiment",
    "AuditRecord",
    "Brand",
    "CategorizedSource",
    "EnrichedAuditRecord",
    "EnrichedKeyword",
    "EnrichedSource",
    "Entity",
    "FlaggedBrand",
    "Funnel",
    "FunnelCategory",
    "FunnelStage",
    "KeywordLabels",
    "KeywordRecord",
    "ModelResponse",
    "Persona",
    "PipelineContext",
    "Product",
    "SearchResult",
    "Source",
]
