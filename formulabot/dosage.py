"""
Dosage validation for LLM-proposed ingredients.
"""
import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel

from .models import FormulaSummary, IngredientSpec

logger = logging.getLogger(__name__)


class ClampRecord(BaseModel):
    """Audit entry for one suggestion that had to be pulled back into range."""

    name: str
    original: float
    clamped: float
    min: float
    max: float
    unit: str = ""


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def validate_ingredient_dosages(ingredients: Optional[List[IngredientSpec]]) -> Tuple[List[IngredientSpec], List[ClampRecord]]:
    """
    Clamp every ingredient's suggested dosage into its [min, max] range.

    The generator upstream is unreliable, so out-of-range suggestions are corrected
    rather than rejected. Each correction is logged as a warning and returned as a
    ClampRecord so the caller can audit generation quality. Values already in range
    pass through untouched.

    A range given upside down (min > max) is swapped before clamping.
    """
    validated: List[IngredientSpec] = []
    records: List[ClampRecord] = []

    for ing in ingredients or []:
        low, high = (ing.min, ing.max) if ing.min <= ing.max else (ing.max, ing.min)
        clamped = clamp(ing.suggested, low, high)

        if clamped != ing.suggested:
            logger.warning(
                f"Dosage clamped for {ing.name}: {ing.suggested} → {clamped} (range: {low}-{high})"
            )
            records.append(ClampRecord(
                name=ing.name,
                original=ing.suggested,
                clamped=clamped,
                min=low,
                max=high,
                unit=ing.unit,
            ))

        if clamped != ing.suggested or (low, high) != (ing.min, ing.max):
            ing = ing.model_copy(update={"suggested": clamped, "min": low, "max": high})
        validated.append(ing)

    return validated, records


def validate_summary(summary: Optional[FormulaSummary]) -> Tuple[Optional[FormulaSummary], List[ClampRecord]]:
    if summary is None or not summary.ingredients:
        return summary, []
    ingredients, records = validate_ingredient_dosages(summary.ingredients)
    return summary.model_copy(update={"ingredients": ingredients}), records
