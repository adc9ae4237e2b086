"""
Brand mention detection in generated text, URLs and extracted entities.

Brand names are reduced to a canonical form (``normalize_brand_name``) from
which two things are derived: a match key used for identity (two names with
the same key are the same brand) and a tolerant regex that finds the brand in
free text whether it is written CamelCase, spaced, hyphenated, with "&" or
"and", or with accents.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional, Pattern, Sequence

from models.schemas import Entity, FlaggedBrand

logger = logging.getLogger(__name__)

ACCENT_CLASSES = {
    "a": "[aÃ¡Ã Ã¤Ã¢]",
    "e": "[eÃ©Ã¨Ã«Ãª]",
    "i": "[iÃ­Ã¬Ã¯Ã®]",
    "o": "[oÃ³Ã²Ã¶Ã´]",
    "u": "[uÃºÃ¹Ã¼Ã»]",
    "n": "[nÃ±]",
}

FLEXIBLE_SEPARATOR = r"(?:[\s\-'’.&]|and)*"
INNER_PUNCTUATION = r"['’.]?"
OPTIONAL_AND = r"(?:&|and)?"
LEFT_BOUNDARY = r"(?<![a-zA-Z0-9])"
RIGHT_BOUNDARY = r"(?![a-zA-Z0-9])"


def _strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return re.sub(r"[Ì-Í¯]", "", decomposed)


def normalize_brand_name(name: str) -> str:
    """Canonical spaced, lowercase, accent-free form of a brand name or text.

    "Ben & Jerry's" -> "ben and jerrys", "KidsAndUs" -> "kids and us",
    "7Eleven" -> "7 eleven", "Coca-Cola" -> "coca cola".
    """
    if not name:
        return ""

    value = re.sub(r"['â]", "", name)
    value = value.replace(".", "")
    value = value.replace("&", " and ")
    value = re.sub(r"([a-z])([A-Z])", r"\1 \2", value)
    value = value.lower()
    value = value.replace("-", " ")
    value = re.sub(r"([a-z])and([a-z])", r"\1 and \2", value)
    value = re.sub(r"([0-9])([a-z])", r"\1 \2", value)
    value = re.sub(r"([a-z])([0-9])", r"\1 \2", value)
    value = _strip_accents(value)
    return re.sub(r"\s+", " ", value).strip()


def brand_match_key(name: str) -> str:
    normalized = normalize_brand_name(name)
    return re.sub(r"[^a-z0-9]", "", re.sub(r"\s+", "", normalized))


def _word_pattern(word: str, only_word: bool) -> str:
    if word == "and" and not only_word:
        return OPTIONAL_AND
    # Apostrophes and periods are dropped by normalization, so the raw
    # spelling ("McDonald's", "Dr.Oetker") may still carry one between letters.
    return INNER_PUNCTUATION.join(ACCENT_CLASSES.get(ch, re.escape(ch)) for ch in word)


@lru_cache(maxsize=4096)
def build_brand_pattern(name: str) -> Optional[Pattern]:
    words = [w for w in normalize_brand_name(name).split(" ") if w]
    if not words:
        return None

    only_word = len(words) == 1
    body = FLEXIBLE_SEPARATOR.join(_word_pattern(w, only_word) for w in words)
    return re.compile(f"{LEFT_BOUNDARY}{body}{RIGHT_BOUNDARY}", re.IGNORECASE)


def brand_entities(entities: Optional[Iterable[Entity]]) -> list[Entity]:
    return [e for e in (entities or []) if e.type.lower() == "brand"]


@dataclass(frozen=True)
class _BrandEntry:
    brand: FlaggedBrand
    key: str
    pattern: Optional[Pattern]
    domain: str


@dataclass(frozen=True)
class BrandHit:
    name: str
    position: int
    brand: Optional[FlaggedBrand] = None


class BrandMatcher:
    """Finds known brands in text, with patterns compiled once per brand list.

    Brands sharing a match key collapse onto the first one given.
    """

    def __init__(self, brands: Sequence[FlaggedBrand]):
        self._entries: list[_BrandEntry] = []
        self._by_key: dict[str, _BrandEntry] = {}

        for brand in brands:
            key = brand_match_key(brand.short_name)
            if key and key in self._by_key:
                logger.debug(f"Skipping duplicate brand '{brand.short_name}' (same as '{self._by_key[key].brand.short_name}')")
                continue
            entry = _BrandEntry(
                brand=brand,
                key=key,
                pattern=build_brand_pattern(brand.short_name) if brand.short_name.strip() else None,
                domain=(brand.domain or "").strip().lower(),
            )
            self._entries.append(entry)
            if key:
                self._by_key[key] = entry

    @property
    def brands(self) -> list[FlaggedBrand]:
        return [e.brand for e in self._entries]

    def brand_for_key(self, key: str) -> Optional[FlaggedBrand]:
        entry = self._by_key.get(key)
        return entry.brand if entry else None

    def display_name(self, name: str) -> str:
        brand = self.brand_for_key(brand_match_key(name))
        return brand.short_name if brand else name

    @staticmethod
    def _search(pattern: Optional[Pattern], text: str, normalized_text: str) -> Optional[int]:
        if pattern is None:
            return None
        match = pattern.search(text)
        if match is not None:
            return match.start()
        match = pattern.search(normalized_text)
        return match.start() if match is not None else None

    def hits(self, text: str, entities: Optional[Iterable[Entity]] = None) -> list[BrandHit]:
        """First occurrence of every known brand and brand-typed entity, sorted by position."""
        if not text:
            return []

        normalized_text = normalize_brand_name(text)
        lowered_text = text.lower()

        entity_text_by_key: dict[str, str] = {}
        for entity in brand_entities(entities):
            entity_text_by_key[brand_match_key(entity.name)] = entity.name

        matched_keys: set[str] = set()
        found: list[BrandHit] = []

        for entry in self._entries:
            positions = []

            entity_text = entity_text_by_key.get(entry.key) if entry.key else None
            if entity_text is not None:
                matched_keys.add(entry.key)
                positions.append(self._search(build_brand_pattern(entity_text), text, normalized_text))

            positions.append(self._search(entry.pattern, text, normalized_text))

            if entry.domain:
                index = lowered_text.find(entry.domain)
                positions.append(index if index >= 0 else None)

            present = [p for p in positions if p is not None]
            if present:
                found.append(BrandHit(entry.brand.short_name, min(present), entry.brand))

        for key, entity_text in entity_text_by_key.items():
            if key in matched_keys or not key:
                continue
            position = self._search(build_brand_pattern(entity_text), text, normalized_text)
            if position is not None:
                found.append(BrandHit(entity_text, position))

        return sorted(found, key=lambda hit: hit.position)

    def rank(self, text: str, entities: Optional[Iterable[Entity]] = None) -> list[str]:
        return [hit.name for hit in self.hits(text, entities)]

    def mentioned(self, text: str) -> list[FlaggedBrand]:
        """Known brands whose name pattern occurs in ``text``, in brand-list order."""
        if not text:
            return []
        normalized_text = normalize_brand_name(text)
        return [e.brand for e in self._entries if self._search(e.pattern, text, normalized_text) is not None]

    def occurrences(self, text: str, brand: FlaggedBrand) -> list[int]:
        pattern = build_brand_pattern(brand.short_name) if brand.short_name.strip() else None
        if pattern is None or not text:
            return []
        return [m.start() for m in pattern.finditer(text)]


def rank_brands_in_text(
    text: str,
    brands: Sequence[FlaggedBrand],
    entities: Optional[Iterable[Entity]] = None,
) -> list[str]:
    return BrandMatcher(brands).rank(text, entities)


def rank_brands_in_texts(
    texts: Sequence[str],
    brands: Sequence[FlaggedBrand],
    entities: Optional[Sequence[Optional[Sequence[Entity]]]] = None,
) -> list[list[str]]:
    matcher = BrandMatcher(brands)
    return [
        matcher.rank(text, entities[i] if entities is not None and i < len(entities) else None)
        for i, text in enumerate(texts)
    ]
