# model/varieties.py
"""
Variety catalog and the deterministic center -> variety pair assignment.

The catalog is loaded once and never mutated. ``VarietyPool.assign`` is a pure
function of (center_index, total_centers): centers take consecutive pairs of
the catalog, and cycle back to the first pair once every pair is taken.
"""
from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

VARIETIES_PER_CENTER = 2


@dataclass(frozen=True)
class VarietyDescriptor:
    id: str
    name: str
    description: str = ""
    characteristics: Tuple[str, ...] = ()

    def matches(self, value: str) -> bool:
        v = value.strip().lower()
        return v == self.id.lower() or v == self.name.lower()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "characteristics": list(self.characteristics),
        }


class VarietyPool:
    __slots__ = ("_varieties", "_per_center")

    def __init__(
        self,
        varieties: Iterable[VarietyDescriptor],
        per_center: int = VARIETIES_PER_CENTER,
    ) -> None:
        self._varieties = tuple(varieties)
        self._per_center = per_center

    def __len__(self) -> int:
        return len(self._varieties)

    def __iter__(self):
        return iter(self._varieties)

    @property
    def varieties(self) -> Tuple[VarietyDescriptor, ...]:
        return self._varieties

    @property
    def cycle_length(self) -> int:
        return math.ceil(len(self._varieties) / self._per_center)

    def assign(
        self, center_index: int, total_centers: int
    ) -> Tuple[VarietyDescriptor, ...]:
        # total_centers is validated but does not move the slice: the pair
        # for an index only depends on its position within the cycle.
        if center_index < 0:
            raise ValueError("center_index must be >= 0")
        if total_centers < 1:
            raise ValueError("total_centers must be >= 1")
        if not self._varieties:
            return ()
        start = (center_index % self.cycle_length) * self._per_center
        end = min(start + self._per_center, len(self._varieties))
        return self._varieties[start:end]

    def lookup(self, value: Optional[str]) -> Optional[VarietyDescriptor]:
        if not value or not value.strip():
            return None
        for v in self._varieties:
            if v.matches(value):
                return v
        return None

    def is_known(self, value: Optional[str]) -> bool:
        return self.lookup(value) is not None

    def is_available_for_center(
        self, value: str, center_index: int, total_centers: int
    ) -> bool:
        return any(
            v.matches(value) for v in self.assign(center_index, total_centers)
        )

    def canonical(self, value: str) -> str:
        """Identity used when counting distinct varieties at a center.

        Catalog entries collapse to their id, so "RRII 105" and "rrii-105"
        count once; names outside the catalog fall back to lowercase.
        """
        known = self.lookup(value)
        if known is not None:
            return known.id
        return value.strip().lower()


RUBBER_VARIETIES: Tuple[VarietyDescriptor, ...] = (
    VarietyDescriptor(
        id="rrii-105",
        name="RRII 105",
        description="High-yielding clone with excellent latex production",
        characteristics=(
            "High yield", "Disease resistant", "Suitable for all regions",
        ),
    ),
    VarietyDescriptor(
        id="rrii-430",
        name="RRII 430",
        description="Premium quality clone with superior latex quality",
        characteristics=(
            "Premium quality", "Latex quality", "High market value",
        ),
    ),
    VarietyDescriptor(
        id="rrii-414",
        name="RRII 414",
        description="Drought-resistant variety with good latex yield",
        characteristics=(
            "Drought resistant", "Good yield", "Low maintenance",
        ),
    ),
    VarietyDescriptor(
        id="rrii-203",
        name="RRII 203",
        description="Early maturing clone with consistent production",
        characteristics=(
            "Early maturing", "Consistent yield", "Fast growth",
        ),
    ),
    VarietyDescriptor(
        id="gt-1",
        name="GT 1",
        description="Traditional variety with proven track record",
        characteristics=("Traditional", "Proven", "Stable production"),
    ),
    VarietyDescriptor(
        id="pb-217",
        name="PB 217",
        description="High-quality latex with excellent processing properties",
        characteristics=(
            "High quality", "Excellent processing", "Premium latex",
        ),
    ),
)

DEFAULT_POOL = VarietyPool(RUBBER_VARIETIES)
