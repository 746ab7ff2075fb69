from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

log = logging.getLogger("geo.ingest.fields")

# Logical field -> accepted source-property keys, highest priority first.
# Covers OpenAddresses exports and the common state/county GIS schemas.
DEFAULT_FIELD_SYNONYMS: Dict[str, List[str]] = {
    "house_number": ["number", "HOUSENUM", "HouseNum", "house_number", "housenumber", "HOUSE_NUMB"],
    "street": ["street", "ST_NAME", "StreetName", "street_name", "STREETNAME", "LSN", "STREET"],
    "unit": ["unit", "UNITNUM", "Unit", "UNIT"],
    "city": ["city", "USPS_CITY", "City", "CITY", "MUNI"],
    "sub_region": ["district", "county", "County", "COUNTY"],
    "region": ["region", "STATE", "State", "state", "REGION"],
    "postcode": ["postcode", "ZIPCODE", "ZipCode", "zip_code", "POSTCODE", "ZIP", "postal_code"],
    "hash": ["hash"],
}

# Full form -> abbreviations a query or a source file may use instead.
DEFAULT_STREET_ABBREVIATIONS: Dict[str, List[str]] = {
    "alley": ["aly"],
    "annex": ["anx"],
    "avenue": ["ave", "av"],
    "boulevard": ["blvd", "bvd"],
    "circle": ["cir"],
    "court": ["ct"],
    "drive": ["dr"],
    "expressway": ["expy"],
    "extension": ["ext"],
    "freeway": ["fwy"],
    "grove": ["grv"],
    "heights": ["hts"],
    "highway": ["hwy"],
    "junction": ["jct"],
    "landing": ["lndg"],
    "lane": ["ln"],
    "loop": ["lp"],
    "parkway": ["pkwy"],
    "pike": ["pk"],
    "place": ["pl"],
    "point": ["pt"],
    "road": ["rd"],
    "square": ["sq"],
    "street": ["st"],
    "terrace": ["ter"],
    "trace": ["trce"],
    "trail": ["trl", "tr"],
    "view": ["vw"],
    "way": ["wy"],
}

DEFAULT_DIRECTIONALS: Dict[str, List[str]] = {
    "north": ["n"],
    "south": ["s"],
    "east": ["e"],
    "west": ["w"],
    "northeast": ["ne"],
    "northwest": ["nw"],
    "southeast": ["se"],
    "southwest": ["sw"],
}


def word_forms(
    tables: Sequence[Mapping[str, Sequence[str]]] = (DEFAULT_STREET_ABBREVIATIONS, DEFAULT_DIRECTIONALS),
) -> Dict[str, tuple]:
    """Every full form and abbreviation -> the whole group, full form first."""
    forms: Dict[str, tuple] = {}
    for table in tables:
        for full, abbreviations in table.items():
            group = (full, *abbreviations)
            for word in group:
                forms.setdefault(word, group)
    return forms


def coerce_text(value: object) -> Optional[str]:
    """Property value as text; None when the value is absent or not scalar."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return f"{value:.0f}" if value.is_integer() else repr(value)
    return None


class FieldMapping:
    """Priority-ordered lookup from logical address fields to source keys."""

    def __init__(self, synonyms: Optional[Mapping[str, Sequence[str]]] = None):
        merged = {k: list(v) for k, v in DEFAULT_FIELD_SYNONYMS.items()}
        for name, keys in (synonyms or {}).items():
            merged[name] = list(keys)
        self.synonyms = merged

    @classmethod
    def from_file(cls, path: str | Path) -> "FieldMapping":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict) or not all(isinstance(v, list) for v in data.values()):
            raise ValueError(f"Field synonym file must map field names to key lists: {path}")
        log.info("Loaded field synonyms for %s from %s", sorted(data), path)
        return cls(data)

    def resolve(self, props: Mapping[str, object], field: str) -> str:
        """First present, non-null key wins; numbers are coerced to text."""
        for key in self.synonyms.get(field, ()):
            if key not in props:
                continue
            text = coerce_text(props[key])
            if text is not None:
                return text
        return ""
