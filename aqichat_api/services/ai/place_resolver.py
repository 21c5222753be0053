"""
Place Query Resolver with Alias and Fuzzy Support

Turns a free-text city/station/address query into search material:
- Optional trailing "(Country)" hint
- Diacritic-free ASCII baseline (NFKD, combining marks removed)
- Candidate strings from a customizable alias table
- A loose LIKE pattern for punctuation/accent tolerant station matching
"""

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from aqichat_core.logger import logger


# =============================================================================
# CUSTOMIZABLE CITY NAME ALIASES
# Keys are normalized ASCII names; values are every spelling worth searching.
# =============================================================================

CITY_ALIASES: Dict[str, List[str]] = {
    # Vietnam
    "hanoi": ["hà nội", "ha noi", "hanoi"],
    "ho chi minh": ["hồ chí minh", "ho chi minh", "hcmc", "sài gòn", "saigon"],

    # Common diacritic variants
    "sao paulo": ["são paulo", "sao paulo"],
    "bogota": ["bogotá", "bogota"],
    "mexico city": ["ciudad de méxico", "mexico city"],
    "belem": ["belém", "belem"],
    "montreal": ["montréal", "montreal"],
}

# Shorter stripped queries match almost every station
MIN_LOOSE_LENGTH = 3

_COUNTRY_HINT_RE = re.compile(r"\(([^)]+)\)\s*$")
_WHITESPACE_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class PlaceQuery:
    """Search material derived from one raw place query"""
    raw_text: str
    country_hint: str = ""
    normalized_ascii_base: str = ""
    candidate_strings: List[str] = field(default_factory=list)
    loose_pattern: str = ""
    alias_key: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.candidate_strings

    @property
    def cache_key(self) -> str:
        return f"{self.alias_key or self.normalized_ascii_base}||{self.country_hint.lower()}"


def to_ascii(text: str) -> str:
    """Lowercase and strip combining diacritical marks"""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def _compact(text: str) -> str:
    return re.sub(r"[\s\-.']+", "", text)


def build_loose_pattern(ascii_text: str) -> str:
    """
    Interleave '%' between every letter/digit of the text

    "Số 46, phố Lưu Quang Vũ" -> "s%o%4%6%p%h%o%l%u%u%q%u%a%n%g%v%u"

    Returns an empty string when fewer than MIN_LOOSE_LENGTH characters remain.
    """
    stripped = _NON_ALNUM_RE.sub("", ascii_text)
    if len(stripped) < MIN_LOOSE_LENGTH:
        return ""
    return "%".join(stripped)


class PlaceResolver:
    """
    Resolves raw place text into a PlaceQuery
    """

    def __init__(self, custom_aliases: Optional[Dict[str, List[str]]] = None):
        """
        Initialize resolver with city aliases

        Args:
            custom_aliases: Optional custom aliases to merge with defaults
        """
        self.aliases = {key: list(values) for key, values in CITY_ALIASES.items()}
        if custom_aliases:
            self._merge_aliases(custom_aliases)

        # Build reverse lookup index
        self._build_index()

    def _merge_aliases(self, custom_aliases: Dict[str, List[str]]):
        """Merge custom aliases with existing ones"""
        for key, aliases in custom_aliases.items():
            key = self._normalize(key)
            if key in self.aliases:
                self.aliases[key].extend(a for a in aliases if a not in self.aliases[key])
            else:
                self.aliases[key] = list(aliases)

    def _build_index(self):
        """Build reverse lookup index from any normalized spelling to its alias key"""
        self.alias_to_key: Dict[str, str] = {}

        for key, aliases in self.aliases.items():
            for spelling in [key, *aliases]:
                normalized = self._normalize(spelling)
                self.alias_to_key.setdefault(normalized, key)
                self.alias_to_key.setdefault(_compact(normalized), key)

    def _normalize(self, text: str) -> str:
        """ASCII baseline: lowercase, no diacritics, single spaces"""
        return _WHITESPACE_RE.sub(" ", to_ascii(text)).strip()

    def find_alias_key(self, base: str) -> Optional[str]:
        """Find the alias key for an already normalized query"""
        if base in self.alias_to_key:
            return self.alias_to_key[base]

        # "saopaulo", "ha-noi" style spellings
        return self.alias_to_key.get(_compact(base))

    def resolve(self, raw_query: str) -> PlaceQuery:
        """
        Resolve a raw query into candidates and a loose pattern

        Never raises; empty input yields a PlaceQuery with no candidates.
        """
        raw = str(raw_query or "").strip()
        if not raw:
            return PlaceQuery(raw_text="")

        match = _COUNTRY_HINT_RE.search(raw)
        country_hint = match.group(1).strip() if match else ""
        raw_no_paren = _COUNTRY_HINT_RE.sub("", raw).strip()

        ascii_text = to_ascii(raw_no_paren)
        base = _WHITESPACE_RE.sub(" ", ascii_text).strip()

        key = self.find_alias_key(base)
        if key is not None:
            candidates = list(self.aliases[key])
        else:
            candidates = [c for c in dict.fromkeys([raw_no_paren, base]) if c]

        query = PlaceQuery(
            raw_text=raw,
            country_hint=country_hint,
            normalized_ascii_base=base,
            candidate_strings=candidates,
            loose_pattern=build_loose_pattern(ascii_text),
            alias_key=key,
        )
        logger.debug(
            f"Resolved place '{raw}' -> base='{base}', alias={key}, "
            f"country='{country_hint}', candidates={candidates[:5]}"
        )
        return query

    def add_alias(self, key: str, aliases: List[str]):
        """
        Add new aliases for a place (for runtime customization)

        Args:
            key: Canonical ASCII name for the place
            aliases: List of alternative names/spellings
        """
        self._merge_aliases({key: aliases})

        # Rebuild index
        self._build_index()
        logger.info(f"Added {len(aliases)} aliases for '{key}'")
