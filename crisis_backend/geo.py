"""
crisis_backend.geo — Geographic reference (ISO3 ↔ country name).

Built from a GeoJSON FeatureCollection whose features carry the ISO3 code
as ``id`` and the display name as ``properties.name``, extended with a
fixed alias table for the spellings used by humanitarian datasets
("DRC", "oPt", "Syria Cross border", ...).

Name resolution (resolve_iso3):
    1. exact match on the lower-cased, stripped name
    2. first containment match in either direction, in map insertion order
       (GeoJSON features first, aliases after)
    3. "" when nothing matches

Pooled-fund names carry a regional suffix in parentheses
("Burkina Faso (RhPF-WCA)"); parse_cbpf_country_name() drops it.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger("crisis.geo")

# ---------------------------------------------------------------------------
# Aliases
# ---------------------------------------------------------------------------

ALIASES: dict[str, str] = {
    "democratic republic of the congo": "COD",
    "drc": "COD",
    "congo": "COD",
    "central african republic": "CAF",
    "car": "CAF",
    "south sudan": "SSD",
    "occupied palestinian territory": "PSE",
    "opt": "PSE",
    "palestine": "PSE",
    "syria cross border": "SYR",
    "venezuela": "VEN",
    "myanmar": "MMR",
    "burma": "MMR",
    "burkina faso": "BFA",
    "niger": "NER",
    "nigeria": "NGA",
    "chad": "TCD",
    "mali": "MLI",
    "haiti": "HTI",
    "lebanon": "LBN",
    "mozambique": "MOZ",
    "pakistan": "PAK",
    "somalia": "SOM",
    "ethiopia": "ETH",
    "yemen": "YEM",
    "ukraine": "UKR",
    "sudan": "SDN",
    "syria": "SYR",
    "afghanistan": "AFG",
}

_PAREN_SUFFIX = re.compile(r"\s*\([^)]*\)\s*$")


def parse_cbpf_country_name(cbpf_name: str) -> str:
    """Strip a trailing parenthetical from a pooled-fund name.

    "Haiti (RhPF-LAC)" → "Haiti", "oPt" → "oPt".
    """
    return _PAREN_SUFFIX.sub("", cbpf_name or "").strip()


# ---------------------------------------------------------------------------
# Reference
# ---------------------------------------------------------------------------

@dataclass
class CountryReference:
    """Lookup maps between lower-cased names and ISO3 codes."""

    name_to_iso3: dict[str, str] = field(default_factory=dict)
    iso3_to_name: dict[str, str] = field(default_factory=dict)

    def add(self, iso3: str, name: str) -> None:
        """Register a country name. Blank names are ignored."""
        code = iso3.strip().upper()
        display = name.strip()
        if not display:
            return
        self.name_to_iso3[display.lower()] = code
        self.iso3_to_name.setdefault(code, display)

    def add_aliases(self, aliases: dict[str, str] = ALIASES) -> None:
        for alias, code in aliases.items():
            self.name_to_iso3[alias] = code
            if code not in self.iso3_to_name:
                self.iso3_to_name[code] = alias[:1].upper() + alias[1:]

    def name_for(self, iso3: str, default: str = "") -> str:
        return self.iso3_to_name.get(iso3, default)

    def resolve_iso3(self, name: str) -> str:
        """Resolve a free-text country name to ISO3, or "" if unknown."""
        lower = (name or "").strip().lower()
        if not lower:
            return ""
        exact = self.name_to_iso3.get(lower)
        if exact is not None:
            return exact
        for key, code in self.name_to_iso3.items():
            if key and (lower in key or key in lower):
                return code
        return ""

    @classmethod
    def from_geojson(cls, data: dict[str, Any]) -> CountryReference:
        ref = cls()
        for feature in data.get("features", []):
            iso3 = feature.get("id")
            name = (feature.get("properties") or {}).get("name")
            if not isinstance(iso3, str) or not isinstance(name, str) or not name.strip():
                logger.warning("GeoJSON feature without id/name skipped: %r", iso3)
                continue
            ref.add(iso3, name)
        ref.add_aliases()
        return ref


def load_geography(path: Path) -> CountryReference:
    """Load a CountryReference from a GeoJSON file on disk."""
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    ref = CountryReference.from_geojson(data)
    logger.info("Geography loaded: %d countries from %s", len(ref.iso3_to_name), path.name)
    return ref
