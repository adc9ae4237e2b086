import enum
from dataclasses import dataclass, field
from typing import Dict, List, Set


class MarketPosition(str, enum.Enum):
    LEADER = "leader"
    CHALLENGER = "challenger"
    NICHE = "niche"
    FOLLOWER = "follower"


class Stage(str, enum.Enum):
    CONTEXT = "context"
    KEYWORDS = "keywordRecords"
    ENRICHED_KEYWORDS = "enrichedKeywords"
    AUDIT = "audit"
    ENRICHED_AUDIT = "enrichedAudit"


STAGE_ORDER = [
    Stage.CONTEXT,
    Stage.KEYWORDS,
    Stage.ENRICHED_KEYWORDS,
    Stage.AUDIT,
    Stage.ENRICHED_AUDIT,
]


@dataclass
class VisibilityRecord:
    """Visibility of one brand within a single search result."""

    name: str
    in_content: bool = False
    in_sources: bool = False
    indices: List[int] = field(default_factory=list)
    citations: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)


@dataclass
class VisibilityStats:
    name: str
    answer: int = 0
    citations: int = 0
    unique_citations: int = 0
    references: int = 0
    unique_references: int = 0


@dataclass
class UrlStats:
    total: int = 0
    engines: Dict[str, int] = field(default_factory=dict)


@dataclass
class DomainStats:
    total: int = 0
    engines: Dict[str, int] = field(default_factory=dict)
    urls: Set[str] = field(default_factory=set)
