from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from models.domain import DomainStats, UrlStats, VisibilityRecord, VisibilityStats
from models.schemas import Brand, FlaggedBrand, SearchResult
from services.brand_matching import BrandMatcher
from services.urls import extract_domain, normalize_url

VisibilityMap = Dict[str, VisibilityRecord]


def _url_key(url: str) -> str:
    return normalize_url(url, remove_params=True).lower()


def _source_domain(domain: str, url: str) -> str:
    return (domain or extract_domain(url) or "").lower()


def annotate_brand_visibility(
    results: Sequence[SearchResult],
    brands: Sequence[FlaggedBrand],
) -> List[VisibilityMap]:
    """Per result, a VisibilityRecord for every brand keyed by short name."""
    matcher = BrandMatcher(brands)
    domain_to_name = {b.domain.strip().lower(): b.short_name for b in matcher.brands if b.domain}

    annotated = []
    for result in results:
        records = {b.short_name: VisibilityRecord(name=b.short_name) for b in matcher.brands}

        for brand in matcher.brands:
            record = records[brand.short_name]
            record.indices = matcher.occurrences(result.answer, brand)
            record.in_content = bool(record.indices)

        for source in result.sources:
            name = domain_to_name.get(_source_domain(source.domain, source.url))
            if name is None:
                continue
            record = records[name]
            record.in_sources = True
            url = normalize_url(source.url, remove_params=True)
            if source.cited:
                record.citations.append(url)
            else:
                record.references.append(url)

        annotated.append(records)
    return annotated


def aggregate_brand_visibility(
    annotated: Iterable[Mapping[str, VisibilityRecord]],
    brands: Sequence[Brand],
) -> List[VisibilityStats]:
    """Roll per-result visibility up to per-brand counters, most answers first.

    A result counts once towards ``answer`` however often the brand occurs in it.
    Citations also count as references. Unique counters dedupe normalized URLs
    over the whole batch.
    """
    names = list(dict.fromkeys(b.short_name for b in brands))
    stats = {name: VisibilityStats(name=name) for name in names}
    cited_seen: Dict[str, set] = {name: set() for name in names}
    referenced_seen: Dict[str, set] = {name: set() for name in names}

    for records in annotated:
        for name in names:
            record = records.get(name)
            if record is None:
                continue
            brand_stats = stats[name]

            if record.in_content:
                brand_stats.answer += 1

            for url in record.citations:
                key = _url_key(url)
                brand_stats.citations += 1
                if key not in cited_seen[name]:
                    cited_seen[name].add(key)
                    brand_stats.unique_citations += 1
                brand_stats.references += 1
                if key not in referenced_seen[name]:
                    referenced_seen[name].add(key)
                    brand_stats.unique_references += 1

            for url in record.references:
                key = _url_key(url)
                brand_stats.references += 1
                if key not in referenced_seen[name]:
                    referenced_seen[name].add(key)
                    brand_stats.unique_references += 1

    return sorted(stats.values(), key=lambda s: s.answer, reverse=True)


def extract_cited_urls(
    engine_results: Sequence[Sequence[SearchResult]],
    include_uncited: bool = True,
    exclude_brands: Optional[Sequence[Brand]] = None,
    engine_labels: Optional[Sequence[str]] = None,
) -> Dict[str, UrlStats]:
    if engine_labels is not None:
        if len(engine_labels) != len(engine_results):
            raise ValueError("Engine labels length must match engine results length")
        labels = list(engine_labels)
    else:
        labels = [f"set_{i}" for i in range(len(engine_results))]

    excluded = {b.domain.lower() for b in exclude_brands or []}
    counts: Dict[str, UrlStats] = {}

    for label, results in zip(labels, engine_results):
        for result in results:
            for source in result.sources:
                if not (source.cited or include_uncited):
                    continue
                if _source_domain(source.domain, source.url) in excluded:
                    continue
                key = _url_key(source.url)
                if key not in counts:
                    counts[key] = UrlStats(engines={lbl: 0 for lbl in labels})
                counts[key].total += 1
                counts[key].engines[label] = counts[key].engines.get(label, 0) + 1

    return counts


def aggregate_cited_domains(urls: Mapping[str, UrlStats]) -> Dict[str, DomainStats]:
    domains: Dict[str, DomainStats] = {}

    for url, url_stats in urls.items():
        domain = extract_domain(url)
        if not domain:
            continue

        if domain not in domains:
            domains[domain] = DomainStats(engines={engine: 0 for engine in url_stats.engines})

        domain_stats = domains[domain]
        if url in domain_stats.urls:
            continue
        domain_stats.total += url_stats.total
        for engine, count in url_stats.engines.items():
            domain_stats.engines[engine] = domain_stats.engines.get(engine, 0) + count
        domain_stats.urls.add(url)

    return domains
