import json
import logging
from typing import Any, Dict, List, Optional

from supabase import Client

from .config import get_supabase
from .models import FormState, form_value_to_str

logger = logging.getLogger(__name__)

# Slot key -> column of the formulas table
COMPONENT_COLUMNS = {
    "Goal": "goal_component",
    "Format": "format_component",
    "Routine": "routine_component",
    "Lifestyle": "lifestyle_component",
    "Sensitivities": "sensitivities_component",
    "CurrentSupplements": "current_supplements_component",
    "Experience": "experience_component",
    "Dosage": "ingredients_component",
    "Sweetener": "sweetener_component",
    "Flavors": "flavors_component",
    "FormulaName": "formula_name_component",
}


class FormulaRepository:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def supabase(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    # CATALOG

    def get_ingredients(self) -> List[Dict[str, Any]]:
        return self.supabase.table("ingredients").select("*").eq("in_stock", True).execute().data

    def get_blends(self) -> List[Dict[str, Any]]:
        return self.supabase.table("blends").select("*").order("display_order").execute().data

    def get_flavors(self) -> List[Dict[str, Any]]:
        return self.supabase.table("flavors").select("*").eq("in_stock", True).execute().data

    def get_sweeteners(self) -> List[Dict[str, Any]]:
        return self.supabase.table("sweeteners").select("*").eq("in_stock", True).execute().data

    # FORMULAS

    def save_formula(self, session_id: str, form: FormState, customer_id: Optional[str] = None,
                     formula_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "session_id": session_id,
            "shopify_customer_id": customer_id,
            "formula_data": json.dumps(formula_data if formula_data is not None else form),
        }
        for key, column in COMPONENT_COLUMNS.items():
            row[column] = form_value_to_str(form.get(key))

        result = self.supabase.table("formulas").insert(row).execute()
        logger.info(f"Saved formula for session {session_id}: {row['formula_name_component']}")
        return result.data[0] if result.data else row

    def get_formula_by_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table("formulas") \
            .select("*") \
            .eq("session_id", session_id) \
            .order("created_at", desc=True) \
            .limit(1) \
            .execute()
        return result.data[0] if result.data else None

    def get_formulas_by_customer(self, customer_id: str) -> List[Dict[str, Any]]:
        return self.supabase.table("formulas") \
            .select("*") \
            .eq("shopify_customer_id", customer_id) \
            .order("created_at", desc=True) \
            .execute().data or []

    def check_name_availability(self, name: str) -> Dict[str, Any]:
        """Reject names already used by a saved formula or listed in the trademark blacklist."""
        name = name.strip()
        existing = self.supabase.table("formulas") \
            .select("id") \
            .eq("formula_name_component", name) \
            .limit(1) \
            .execute()
        if existing.data:
            return {"available": False, "reason": "Name already used in your formulas"}

        trademarked = self.supabase.table("trademark_blacklist") \
            .select("*") \
            .ilike("keyword", name) \
            .limit(1) \
            .execute()
        if trademarked.data:
            return {"available": False, "reason": trademarked.data[0].get("reason") or "Trademarked name"}

        return {"available": True}
