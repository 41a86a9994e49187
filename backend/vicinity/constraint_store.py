"""
Versioned vocabulary for query understanding.

Maps place names to geographic points and informal price, cuisine, party-size
and attribute words to structured constraints. The mapping is city-specific
data, loaded from JSON (``settings.constraints_path``) rather than hardcoded.
"""

from __future__ import annotations

import difflib
import functools
import json
import logging
import re
import unicodedata
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any

from .schemas import AttributeFilter, GeoPoint, PartySize, PriceRange
from .settings import settings

logger = logging.getLogger(__name__)

MAX_PHRASE_WORDS = 3
PLACE_MEMO_SIZE = 1024
_PRICE_SYMBOLS_RE = re.compile(r"(?<![\w$])(\${1,4})(?![\w$])")
_PARTY_COUNT_RE = re.compile(r"\b(?:for|party of|group of|table for)\s+(\d{1,3})\b")


def normalize_token(value: str) -> str:
    """Lowercase, strip accents and punctuation, join words with spaces."""
    decomposed = unicodedata.normalize("NFKD", value.strip().lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = "".join(ch if ch.isalnum() else " " for ch in stripped)
    return " ".join(cleaned.split())


def _build_lookup(mapping: Mapping[str, Iterable[str]]) -> dict[str, str]:
    reverse: dict[str, str] = {}
    for canonical, synonyms in mapping.items():
        reverse[normalize_token(canonical.replace("_", " "))] = canonical
        for synonym in synonyms:
            key = normalize_token(synonym)
            if key:
                reverse[key] = canonical
    return reverse


@dataclass(frozen=True)
class Place:
    key: str
    point: GeoPoint
    radius_m: float


@dataclass
class VocabularyScan:
    """Everything the heuristic parser could recognise in a piece of text."""

    cuisines: list[str] = field(default_factory=list)
    price: PriceRange | None = None
    place: Place | None = None
    place_text: str | None = None
    attribute_filters: list[AttributeFilter] = field(default_factory=list)
    party_size: PartySize | None = None
    open_now: bool = False
    residual_tokens: list[str] = field(default_factory=list)

    @property
    def residual_text(self) -> str:
        return " ".join(self.residual_tokens)


class ConstraintStore:
    def __init__(self, payload: Mapping[str, Any], memo_size: int = PLACE_MEMO_SIZE) -> None:
        self.version = str(payload.get("version") or "unversioned")
        self.default_radius_m = float(payload.get("default_radius_m") or settings.DEFAULT_RADIUS_M)

        self._places: dict[str, Place] = {}
        place_aliases: dict[str, list[str]] = {}
        for key, item in (payload.get("places") or {}).items():
            self._places[key] = Place(
                key=key,
                point=GeoPoint(lat=float(item["lat"]), lon=float(item["lon"])),
                radius_m=float(item.get("radius_m") or self.default_radius_m),
            )
            place_aliases[key] = list(item.get("aliases") or [])
        self._place_lookup = _build_lookup(place_aliases)

        self._price_lookup: dict[str, PriceRange] = {
            normalize_token(word): PriceRange(min=int(rng["min"]), max=int(rng["max"]))
            for word, rng in (payload.get("price_vocabulary") or {}).items()
        }
        self._cuisine_lookup = _build_lookup(payload.get("cuisines") or {})
        self._broad = set(payload.get("broad_cuisines") or [])
        self._attribute_lookup: dict[str, AttributeFilter] = {
            normalize_token(word): AttributeFilter(label=word, **rule)
            for word, rule in (payload.get("attribute_vocabulary") or {}).items()
        }

        self._party_phrases: dict[str, PartySize] = {}
        self._party_limits: list[tuple[int | None, PartySize]] = []
        for label, rule in (payload.get("party_size") or {}).items():
            for phrase in rule.get("phrases") or []:
                self._party_phrases[normalize_token(phrase)] = label
            self._party_limits.append((rule.get("max"), label))
        self._party_limits.sort(key=lambda item: float("inf") if item[0] is None else item[0])

        self._open_now = {normalize_token(p) for p in payload.get("open_now_phrases") or []}
        self._stopwords = {normalize_token(w) for w in payload.get("stopwords") or []}
        self._resolve_key = functools.lru_cache(maxsize=memo_size)(self._resolve_uncached)

    @classmethod
    def load(cls, path: Path | None = None, memo_size: int = PLACE_MEMO_SIZE) -> ConstraintStore:
        source = path or settings.constraints_path
        payload = json.loads(Path(source).read_text(encoding="utf-8"))
        store = cls(payload, memo_size=memo_size)
        logger.info("Loaded constraint store version %s from %s", store.version, source)
        return store

    @property
    def place_keys(self) -> list[str]:
        return sorted(self._places)

    @property
    def cuisine_names(self) -> list[str]:
        return sorted(set(self._cuisine_lookup.values()))

    @property
    def attribute_words(self) -> list[str]:
        return sorted(self._attribute_lookup)

    # ---------- single lookups ----------

    def resolve_place(self, text: str | None) -> Place | None:
        """Resolve a free-form place reference; exact alias, contained alias, then close spelling."""
        key = normalize_token(text or "")
        if not key:
            return None
        return self._resolve_key(key)

    def _resolve_uncached(self, key: str) -> Place | None:
        canonical = self._place_lookup.get(key)
        if canonical is None:
            padded = f" {key} "
            for alias in sorted(self._place_lookup, key=len, reverse=True):
                if f" {alias} " in padded:
                    canonical = self._place_lookup[alias]
                    break
        if canonical is None:
            # Misspellings from the model or the caller ("fountian square")
            matches = difflib.get_close_matches(key, self._place_lookup.keys(), n=1, cutoff=0.85)
            if matches:
                canonical = self._place_lookup[matches[0]]
                logger.debug("Fuzzy place match: %r -> %s", key, canonical)
        return self._places.get(canonical) if canonical else None

    def price_range(self, word: str) -> PriceRange | None:
        return self._price_lookup.get(normalize_token(word))

    def canonical_cuisine(self, word: str) -> str | None:
        return self._cuisine_lookup.get(normalize_token(word))

    def is_broad_cuisine(self, cuisine: str) -> bool:
        return cuisine in self._broad

    def attribute_filter(self, word: str) -> AttributeFilter | None:
        return self._attribute_lookup.get(normalize_token(word))

    def party_size_for(self, count: int) -> PartySize:
        for limit, label in self._party_limits:
            if limit is None or count <= limit:
                return label
        return "large"

    def canonical_cuisines(self, values: Iterable[str]) -> list[str]:
        """Canonicalize model-provided cuisines; unknown values are kept normalized."""
        out: list[str] = []
        for value in values:
            canonical = self.canonical_cuisine(value) or normalize_token(value).replace(" ", "_")
            if canonical and canonical not in out:
                out.append(canonical)
        return out

    # ---------- whole-text scan ----------

    def scan(self, text: str) -> VocabularyScan:
        """Greedy longest-phrase match over the text against every vocabulary."""
        result = VocabularyScan()
        lowered = text.lower()

        symbols = _PRICE_SYMBOLS_RE.search(lowered)
        if symbols:
            tier = len(symbols.group(1))
            result.price = PriceRange(min=tier, max=tier)
        count_match = _PARTY_COUNT_RE.search(lowered)
        if count_match:
            result.party_size = self.party_size_for(int(count_match.group(1)))

        tokens = normalize_token(text).split()
        i = 0
        while i < len(tokens):
            consumed = 0
            for size in range(min(MAX_PHRASE_WORDS, len(tokens) - i), 0, -1):
                phrase = " ".join(tokens[i : i + size])
                if self._apply_phrase(phrase, result):
                    consumed = size
                    break
            if consumed:
                i += consumed
                continue
            token = tokens[i]
            if token not in self._stopwords and not token.isdigit():
                result.residual_tokens.append(token)
            i += 1
        return result

    def _apply_phrase(self, phrase: str, result: VocabularyScan) -> bool:
        if phrase in self._open_now:
            result.open_now = True
            return True
        if phrase in self._party_phrases:
            result.party_size = result.party_size or self._party_phrases[phrase]
            return True
        price = self._price_lookup.get(phrase)
        if price is not None:
            result.price = result.price or price
            return True
        attribute = self._attribute_lookup.get(phrase)
        if attribute is not None:
            if attribute not in result.attribute_filters:
                result.attribute_filters.append(attribute)
            return True
        canonical_place = self._place_lookup.get(phrase)
        if canonical_place is not None:
            if result.place is None:
                result.place = self._places.get(canonical_place)
                result.place_text = phrase
            return True
        cuisine = self._cuisine_lookup.get(phrase)
        if cuisine is not None:
            if cuisine not in result.cuisines:
                result.cuisines.append(cuisine)
            return True
        return False


_store: ConstraintStore | None = None
_store_lock = Lock()


def get_constraint_store() -> ConstraintStore:
    global _store
    with _store_lock:
        if _store is None:
            _store = ConstraintStore.load()
        return _store


def reload_constraint_store(path: Path | None = None) -> ConstraintStore:
    """Swap in a new vocabulary version; in-flight parses keep the old object."""
    global _store
    fresh = ConstraintStore.load(path)
    with _store_lock:
        _store = fresh
    return fresh


__all__ = [
    "ConstraintStore",
    "Place",
    "VocabularyScan",
    "get_constraint_store",
    "normalize_token",
    "reload_constraint_store",
]
