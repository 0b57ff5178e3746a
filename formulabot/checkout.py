import logging
from typing import Any, Dict, List, Optional

import requests

from .config import CHECKOUT_ENDPOINT, CHECKOUT_TIMEOUT_SECONDS
from .models import CheckoutResult, FormState, IngredientSpec, form_value_to_str, parse_dosage_map
from .normalizer import DEFAULT_FORMULA_NAME
from .slots import STICK_PACK

logger = logging.getLogger(__name__)


def chosen_ingredients(form: FormState, ingredients: List[IngredientSpec]) -> List[Dict[str, Any]]:
    """Ingredients with the dosage the user confirmed, or the suggestion when they did not touch it."""
    dosages = parse_dosage_map(form.get("Dosage"))
    return [
        {
            "name": ing.name,
            "dosage": dosages.get(ing.name, ing.suggested),
            "unit": ing.unit,
            "rationale": ing.rationale,
        }
        for ing in ingredients
    ]


def build_checkout_payload(form: FormState, ingredients: List[IngredientSpec], session_id: str) -> Dict[str, Any]:
    return {
        "formulaName": form_value_to_str(form.get("FormulaName")) or DEFAULT_FORMULA_NAME,
        "ingredients": chosen_ingredients(form, ingredients),
        "format": form_value_to_str(form.get("Format")) or STICK_PACK,
        "sweetener": form_value_to_str(form.get("Sweetener")),
        "flavors": form_value_to_str(form.get("Flavors")),
        "goal": form_value_to_str(form.get("Goal")),
        "routine": form_value_to_str(form.get("Routine")),
        "lifestyle": form_value_to_str(form.get("Lifestyle")),
        "sensitivities": form_value_to_str(form.get("Sensitivities")),
        "currentSupplements": form_value_to_str(form.get("CurrentSupplements")),
        "experience": form_value_to_str(form.get("Experience")),
        "sessionId": session_id,
    }


class CheckoutGateway:
    """Hands a finished formula to the shop and gets back a URL the user can pay at."""

    def __init__(self, endpoint: Optional[str] = CHECKOUT_ENDPOINT, timeout: float = CHECKOUT_TIMEOUT_SECONDS):
        self.endpoint = endpoint
        self.timeout = timeout

    def create_checkout(self, payload: Dict[str, Any]) -> CheckoutResult:
        if not self.endpoint:
            return CheckoutResult(success=False, error="Checkout endpoint is not configured")

        try:
            response = requests.post(self.endpoint, json=payload, timeout=self.timeout)
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Checkout request failed: {e}")
            return CheckoutResult(success=False, error=str(e))

        if response.ok and data.get("success") and data.get("checkoutUrl"):
            logger.info(f"Checkout created for {payload.get('formulaName')}: {data['checkoutUrl']}")
            return CheckoutResult(success=True, url=data["checkoutUrl"], price=str(data["price"]) if data.get("price") is not None else None)

        error = data.get("error") or f"HTTP {response.status_code}"
        logger.error(f"Checkout creation failed: {error}")
        return CheckoutResult(success=False, error=error)
