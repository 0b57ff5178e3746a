"""
Catalog access for prompt building.

Ingredient, flavor and sweetener lists change rarely but are needed on every model
call, so they are served through a read-through cache with a fixed time-to-live.
"""
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from .config import INVENTORY_CACHE_TTL_SECONDS, MAX_FLAVORS
from .repository import FormulaRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


def flavor_label(flavor: Dict[str, Any]) -> str:
    return (flavor.get("name") or "").replace(" Flavor Powder", "").strip()


class TTLCache(Generic[T]):
    """Holds one fetched value and refetches it once it is older than ttl seconds."""

    def __init__(self, fetcher: Callable[[], T], ttl: float = INVENTORY_CACHE_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.fetcher = fetcher
        self.ttl = ttl
        self.clock = clock
        self._value: Optional[T] = None
        self._fetched_at: Optional[float] = None

    @property
    def is_fresh(self) -> bool:
        return self._fetched_at is not None and self.clock() - self._fetched_at < self.ttl

    def get(self) -> T:
        if not self.is_fresh:
            self._value = self.fetcher()
            self._fetched_at = self.clock()
        return self._value

    def peek(self) -> Optional[T]:
        """Last fetched value, fresh or not, without fetching."""
        return self._value


class InventoryService:
    def __init__(self, repository: Optional[FormulaRepository] = None,
                 ttl: float = INVENTORY_CACHE_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic,
                 max_flavors: int = MAX_FLAVORS):
        self.repository = repository or FormulaRepository()
        self.max_flavors = max_flavors
        self._ingredients = TTLCache(self.repository.get_ingredients, ttl, clock)
        self._blends = TTLCache(self.repository.get_blends, ttl, clock)
        self._flavors = TTLCache(self.repository.get_flavors, ttl, clock)
        self._sweeteners = TTLCache(self.repository.get_sweeteners, ttl, clock)

    def _read(self, cache: TTLCache, label: str) -> List[Dict[str, Any]]:
        try:
            return cache.get() or []
        except Exception as e:
            # Serve the stale list rather than dropping the catalog from the prompt
            logger.error(f"Error loading {label}: {e}")
            return cache.peek() or []

    def get_ingredients(self) -> List[Dict[str, Any]]:
        return self._read(self._ingredients, "ingredients")

    def get_blends(self) -> List[Dict[str, Any]]:
        return self._read(self._blends, "blends")

    def get_flavors(self) -> List[Dict[str, Any]]:
        return self._read(self._flavors, "flavors")

    def get_sweeteners(self) -> List[Dict[str, Any]]:
        return self._read(self._sweeteners, "sweeteners")

    def is_flavor_in_stock(self, flavor_name: str) -> bool:
        wanted = flavor_name.lower().strip()
        return any(flavor_label(f).lower() == wanted for f in self.get_flavors())

    def unavailable_flavors(self, names: Sequence[str]) -> List[str]:
        """Names missing from the flavor list; empty when the list could not be loaded."""
        if not self.get_flavors():
            return []
        return [name for name in names if not self.is_flavor_in_stock(name)]

    def ingredients_by_blend(self) -> "OrderedDict[str, List[Dict[str, Any]]]":
        grouped: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        for blend in self.get_blends():
            grouped[blend["name"]] = []
        for ing in self.get_ingredients():
            grouped.setdefault(ing.get("blend") or "Other", []).append(ing)
        return grouped

    def ingredients_prompt(self) -> str:
        lines = []
        for blend, ingredients in self.ingredients_by_blend().items():
            if not ingredients:
                continue
            listed = ", ".join(
                f"{ing['name']} {float(ing['dosage_min']):g}-{float(ing['dosage_max']):g}{ing.get('unit') or 'mg'}"
                for ing in ingredients
            )
            lines.append(f"{blend}: {listed}")
        return "\n".join(lines) if lines else "No ingredient list available - use common, safe supplement ingredients."

    def flavor_list_prompt(self) -> str:
        return ", ".join(flavor_label(f) for f in self.get_flavors())

    def sweetener_list_prompt(self) -> str:
        return ", ".join(s["name"] for s in self.get_sweeteners())

    def inventory_summary(self) -> str:
        return (
            f"Inventory: {len(self.get_flavors())} flavors, {len(self.get_ingredients())} ingredients, "
            f"{len(self.get_sweeteners())} sweeteners in stock."
        )
