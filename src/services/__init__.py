from .brand_matching import BrandMatcher, normalize_brand_name, rank_brands_in_text
from .context_import import ContextImportError, import_context
from .source_enrichment import enrich_sources, ranked_brands_in_sources
from .urls import extract_domain, normalize_url

__all__ = [
    "BrandMatcher",
    "ContextImportError",
    "enrich_sources",
    "extract_domain",
    "import_context",
    "normalize_brand_name",
    "normalize_url",
    "rank_brands_in_text",
    "ranked_brands_in_sources",
]
