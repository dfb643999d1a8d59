"""
Station Candidate Resolver.

Merges the configuration sources that name stations for a river into one
ranked, de-duplicated candidate list per role:
  1. river_station_roles rows, ascending priority
  2. the legacy river_usgs_map override
  3. the river's default station (flow only)
Temperature and stage never fall back to the default station.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from core.models import (
    LegacySiteOverride,
    River,
    Role,
    StationCapability,
    StationRoleMapping,
)

logger = logging.getLogger("resolver")

# Priority assigned to the single-station sources when merged
LEGACY_PRIORITY = 0
DEFAULT_PRIORITY = 0

ROLES_WITH_DEFAULT = frozenset({Role.FLOW})


def merge_candidates(ranked_lists: Iterable[Sequence[Tuple[str, int]]]) -> List[str]:
    """
    Merge ordered sources of (site_no, priority) pairs.

    Each source is sorted by ascending priority (stable), sources are
    concatenated in the order given, blanks are dropped and duplicates keep
    their first occurrence.
    """
    merged: List[str] = []
    seen: Set[str] = set()
    for source in ranked_lists:
        for site_no, _priority in sorted(source, key=lambda pair: pair[1]):
            site = (site_no or "").strip()
            if not site or site in seen:
                continue
            seen.add(site)
            merged.append(site)
    return merged


@dataclass
class StationDirectory:
    """All station configuration for a run, loaded once."""
    mappings: List[StationRoleMapping] = field(default_factory=list)
    legacy: Dict[int, LegacySiteOverride] = field(default_factory=dict)
    capabilities: List[StationCapability] = field(default_factory=list)

    @classmethod
    async def load(cls, store) -> "StationDirectory":
        mapping_rows = await store.select("river_station_roles", order_by=["river_id", "priority", "id"])
        legacy_rows = await store.select("river_usgs_map")
        registry_rows = await store.select("usgs_station_registry", filters={"is_active": True})

        mappings = []
        for row in mapping_rows:
            try:
                mapping = StationRoleMapping.from_row(row)
            except (KeyError, ValueError) as e:
                logger.warning("Skipping malformed role mapping %s: %s", row.get("id"), e)
                continue
            if mapping.is_active:
                mappings.append(mapping)

        legacy = {}
        for row in legacy_rows:
            override = LegacySiteOverride.from_row(row)
            legacy[override.river_id] = override

        capabilities = [StationCapability.from_row(r) for r in registry_rows]
        logger.debug(
            "Loaded %d role mappings, %d legacy overrides, %d registry stations",
            len(mappings), len(legacy), len(capabilities),
        )
        return cls(mappings=mappings, legacy=legacy, capabilities=capabilities)

    def candidates(self, river: River, role: Role) -> List[str]:
        mapped = [
            (m.site_no, m.priority)
            for m in self.mappings
            if m.river_id == river.id and m.role == role
        ]
        override = self.legacy.get(river.id)
        legacy_site: Optional[str] = override.site_for(role) if override else None
        sources = [mapped, [(legacy_site, LEGACY_PRIORITY)] if legacy_site else []]
        if role in ROLES_WITH_DEFAULT and river.default_site_no:
            sources.append([(river.default_site_no, DEFAULT_PRIORITY)])
        return merge_candidates(sources)

    def registry_pool(self, river: River, role: Role, exclude: Iterable[str] = ()) -> List[str]:
        """Capable-but-unmapped stations for the last-resort fallback."""
        excluded = set(exclude)
        pool = []
        for cap in sorted(self.capabilities, key=lambda c: c.site_no):
            if cap.river_id != river.id or cap.site_no in excluded:
                continue
            if role == Role.FLOW and cap.has_flow:
                pool.append(cap.site_no)
            elif role == Role.TEMPERATURE and cap.has_temp:
                pool.append(cap.site_no)
        return merge_candidates([[(site, 0) for site in pool]])


async def load_active_rivers(store) -> List[River]:
    """Active rivers in ascending id order."""
    rows = await store.select("rivers", filters={"is_active": True}, order_by="id")
    return [River.from_row(row) for row in rows]
