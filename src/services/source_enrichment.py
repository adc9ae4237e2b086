import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from models.schemas import EnrichedSource, Entity, FlaggedBrand, Source
from services.brand_matching import BrandMatcher, brand_entities, brand_match_key
from services.urls import extract_domain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceBrandRanking:
    mentioned: List[str] = field(default_factory=list)
    linked: List[str] = field(default_factory=list)


class _KeyedNames:
    def __init__(self):
        self.names: list[str] = []
        self._keys: set[str] = set()

    def add(self, name: Optional[str]) -> None:
        if not name:
            return
        key = brand_match_key(name) or name.lower()
        if key in self._keys:
            return
        self._keys.add(key)
        self.names.append(name)


def _source_domain(source: Source) -> str:
    return (source.domain or extract_domain(source.url) or "").strip().lower()


def enrich_source(
    source: Source,
    brands: Sequence[FlaggedBrand],
    entities: Optional[Iterable[Entity]] = None,
    matcher: Optional[BrandMatcher] = None,
) -> EnrichedSource:
    """Attach the own brands and competitors a single source mentions or links to.

    Names are looked up as lowercase substrings of the title and URL. A source is
    linked to a brand when its domain is the brand's domain.
    """
    matcher = matcher or BrandMatcher(brands)
    haystacks = [(source.title or "").lower(), (source.url or "").lower()]
    domain = _source_domain(source)

    mentioned_brands = _KeyedNames()
    mentioned_competitors = _KeyedNames()
    linked_brand = None
    linked_competitor = None

    for brand in matcher.brands:
        name = brand.short_name.strip().lower()
        if name and any(name in h for h in haystacks):
            target = mentioned_competitors if brand.is_competitor else mentioned_brands
            target.add(brand.short_name)

        if domain and brand.domain.strip().lower() == domain:
            if brand.is_competitor and linked_competitor is None:
                linked_competitor = brand.short_name
            elif not brand.is_competitor and linked_brand is None:
                linked_brand = brand.short_name

    for entity in brand_entities(entities):
        name = entity.name.strip().lower()
        if not name or not any(name in h for h in haystacks):
            continue
        known = matcher.brand_for_key(brand_match_key(entity.name))
        if known is None:
            mentioned_competitors.add(entity.name)
        elif known.is_competitor:
            mentioned_competitors.add(known.short_name)
        else:
            mentioned_brands.add(known.short_name)

    return EnrichedSource(
        **source.model_dump(include=set(Source.model_fields)),
        mentioned_brands=mentioned_brands.names,
        mentioned_competitors=mentioned_competitors.names,
        linked_brand=linked_brand,
        linked_competitor=linked_competitor,
    )


def enrich_sources(
    sources: Sequence[Source],
    brands: Sequence[FlaggedBrand],
    entities: Optional[Iterable[Entity]] = None,
    matcher: Optional[BrandMatcher] = None,
) -> list[EnrichedSource]:
    matcher = matcher or BrandMatcher(brands)
    entity_list = list(entities or [])
    return [enrich_source(s, brands, entity_list, matcher) for s in sources]


def rank_brands_in_source_list(sources: Sequence[EnrichedSource]) -> SourceBrandRanking:
    """Brands in order of the first source that mentions or links to them."""
    mentioned = _KeyedNames()
    linked = _KeyedNames()

    for source in sources:
        for name in [*source.mentioned_brands, *source.mentioned_competitors]:
            mentioned.add(name)
        linked.add(source.linked_brand)
        linked.add(source.linked_competitor)

    return SourceBrandRanking(mentioned=mentioned.names, linked=linked.names)


def ranked_brands_in_sources(source_lists: Sequence[Sequence[EnrichedSource]]) -> list[SourceBrandRanking]:
    return [rank_brands_in_source_list(sources) for sources in source_lists]
