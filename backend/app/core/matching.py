"""Case-insensitive substring matching shared by the search engine and the
in-memory store. Semantics mirror the Postgres adapter's predicates."""
from __future__ import annotations
import itertools
import re
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Tuple

from app.core.entities import GeoPoint, LocationRecord, PhrasePlan, RecordQuery
from app.core.services.field_mapping import word_forms
from app.core.services.geo import haversine_miles

_NON_ALNUM = re.compile(r"[^0-9a-z]+")
_WORD_FORMS = word_forms()
MAX_PHRASE_VARIANTS = 32


def tokenize(text: Optional[str]) -> List[str]:
    return (text or "").split()


def normalize(text: Optional[str]) -> str:
    """Lower-case and collapse punctuation/whitespace runs to single spaces."""
    return _NON_ALNUM.sub(" ", (text or "").lower()).strip()


def contains(haystack: Optional[str], needle: str) -> bool:
    return needle.lower() in (haystack or "").lower()


def token_alternates(token: str) -> Tuple[str, ...]:
    """Other forms of an abbreviable token, matched as whole words: ``avenue`` -> ``ave``, ``av``."""
    base = normalize(token)
    group = _WORD_FORMS.get(base, ())
    return tuple(form for form in group if form != base)


def alternates_pattern(alternates: Iterable[str]) -> str:
    """Whole-word regex over ``alternates``; forms are plain ``[a-z]`` words."""
    return r"\b(?:" + "|".join(alternates) + r")\b"


def token_fields(record: LocationRecord) -> Iterable[str]:
    """Fields a free-text token may match."""
    return (
        record.house_number,
        record.street,
        record.city,
        record.sub_region,
        record.postcode,
        f"{record.house_number} {record.street}",
    )


@lru_cache(maxsize=256)
def _alternates_regex(token: str) -> Optional[re.Pattern]:
    alternates = token_alternates(token)
    return re.compile(alternates_pattern(alternates), re.IGNORECASE) if alternates else None


def matches_token(record: LocationRecord, token: str) -> bool:
    if any(contains(value, token) for value in token_fields(record)):
        return True
    pattern = _alternates_regex(token)
    return pattern is not None and any(pattern.search(value or "") for value in token_fields(record))


def matches_all_tokens(record: LocationRecord, tokens: Iterable[str]) -> bool:
    return all(matches_token(record, t) for t in tokens)


def matches_query(record: LocationRecord, query: RecordQuery) -> bool:
    if query.bbox is not None and not query.bbox.contains(record.latitude, record.longitude):
        return False
    if query.street and not contains(record.street, query.street):
        return False
    if query.city and not contains(record.city, query.city):
        return False
    if query.sub_region and not contains(record.sub_region, query.sub_region):
        return False
    if query.postcode and (record.postcode or "").lower() != query.postcode.lower():
        return False
    if query.region and (record.region or "").upper() != query.region.upper():
        return False
    if query.phrase is not None:
        address = normalize(record.full_address)
        if not any(term in address for term in query.phrase.terms):
            return False
    if query.center is not None and query.radius_miles is not None:
        point = GeoPoint(lat=record.latitude, lng=record.longitude)
        if haversine_miles(query.center, point) > query.radius_miles:
            return False
    return matches_all_tokens(record, query.tokens)


def address_sort_key(record: LocationRecord):
    return ((record.city or "").lower(), (record.street or "").lower(), record.house_number or "")


# "#F", "Apt 2B", "Suite 100", ... but not place names like "Ste. Genevieve".
_UNIT_DESIGNATOR = re.compile(
    r"[,\s]*#\s*[a-z0-9]+"
    r"|[,\s]+(?:apt|apartment|ste|suite|unit|bldg|building|fl|floor|rm|room)\b\.?\s*"
    r"(?:#\s*[a-z0-9]+|\d+[a-z]?\b|[a-z]\b)",
    re.IGNORECASE,
)
_DOUBLE_COMMA = re.compile(r"\s*,\s*,\s*")
_MULTI_SPACE = re.compile(r"\s{2,}")


def strip_unit_designator(text: str) -> str:
    """``20 Overbrook Ct #F, Monroe`` -> ``20 Overbrook Ct, Monroe``."""
    stripped = _UNIT_DESIGNATOR.sub("", text or "")
    stripped = _DOUBLE_COMMA.sub(", ", stripped)
    return _MULTI_SPACE.sub(" ", stripped).strip()


def looks_like_house_number(word: str) -> bool:
    """``2525``, ``12b`` yes; ``1st`` no."""
    digits = sum(c.isdigit() for c in word)
    return bool(word) and word[0].isdigit() and digits * 2 >= len(word)


def _spellings(words: List[str]) -> Tuple[str, ...]:
    options = [(w, *(f for f in _WORD_FORMS.get(w, ()) if f != w)) for w in words]
    combos = itertools.islice(itertools.product(*options), MAX_PHRASE_VARIANTS)
    return tuple(dict.fromkeys(" ".join(c) for c in combos))


def plan_phrase(text: str) -> Optional[PhrasePlan]:
    """Normalized variants of ``text``; None when nothing searchable is left."""
    normalized = normalize(strip_unit_designator(text))
    if not normalized:
        return None
    words = normalized.split()
    fallback: Tuple[str, ...] = ()
    if len(words) > 1 and looks_like_house_number(words[0]):
        fallback = _spellings(words[1:])
    return PhrasePlan(variants=_spellings(words), fallback=fallback)


EXACT_ADDRESS_SCORE = 100
ADDRESS_SPAN_SCORE = 90
STREET_CITY_SCORE = 80
CITY_SCORE = 60
STREET_SCORE = 40
HOUSE_NUMBER_SCORE = 20
POSTCODE_SCORE = 10
STREET_FALLBACK_SCORE = 5

# Checked in order after the exact-address test; the first hit wins.
PHRASE_TIERS = (
    ("city", CITY_SCORE),
    ("street", STREET_SCORE),
    ("house_number", HOUSE_NUMBER_SCORE),
    ("postcode", POSTCODE_SCORE),
    ("street_city", STREET_CITY_SCORE),
    ("full_address", ADDRESS_SPAN_SCORE),
)


def phrase_fields(record: LocationRecord) -> Dict[str, str]:
    return {
        "city": normalize(record.city),
        "street": normalize(record.street),
        "house_number": normalize(record.house_number),
        "postcode": normalize(record.postcode),
        "street_city": normalize(f"{record.street} {record.city}"),
        "full_address": normalize(record.full_address),
    }


def phrase_score(record: LocationRecord, plan: PhrasePlan) -> int:
    """Relevance of ``record`` for a planned phrase; 0 when nothing matches.

    A phrase that fits inside one field scores by that field. A phrase spanning
    fields scores higher: street and city 80, anything else in the full address
    90, the whole address 100. Addresses on the right street but with another
    house number score 5.
    """
    fields = phrase_fields(record)
    if fields["full_address"] in plan.variants:
        return EXACT_ADDRESS_SCORE
    for name, weight in PHRASE_TIERS:
        if any(v in fields[name] for v in plan.variants):
            return weight
    if any(f in fields["full_address"] for f in plan.fallback):
        return STREET_FALLBACK_SCORE
    return 0
