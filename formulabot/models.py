"""
Data definitions for the formula chatbot.
This defines what information flows through a conversation and out of the LLM.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Slot key -> value. Multi-select answers may arrive as lists; the Dosage slot holds a
# JSON-encoded {ingredient name: dosage} map.
FormValue = Union[str, List[str]]
FormState = Dict[str, FormValue]


class CamelModel(BaseModel):
    """Accepts both the camelCase keys the LLM emits and snake_case field names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class IngredientSpec(CamelModel):
    name: str
    min: float
    max: float
    suggested: float
    unit: str = "mg"
    rationale: str = ""


class SliderConfig(CamelModel):
    min: float
    max: float
    step: float = 1
    default_value: float = Field(0, alias="defaultValue")
    unit: str = ""
    recommended_value: Optional[float] = Field(None, alias="recommendedValue")


class FormulaSummary(CamelModel):
    ingredients: List[IngredientSpec] = []
    delivery_format: Optional[str] = Field(None, alias="deliveryFormat")
    formula_name: Optional[str] = Field(None, alias="formulaName")
    safety_note: Optional[str] = Field(None, alias="safetyNote")
    redirect_url: Optional[str] = Field(None, alias="redirectUrl")
    goal: Optional[str] = None
    sweetener: Optional[str] = None
    flavors: Optional[str] = None
    routine: Optional[str] = None
    lifestyle: Optional[str] = None
    sensitivities: Optional[str] = None
    current_supplements: Optional[str] = Field(None, alias="currentSupplements")
    experience: Optional[str] = None


class BotReply(CamelModel):
    """Schema of the JSON object the LLM must return on every regular turn."""

    text: str
    component: str
    input_type: str = Field("text", alias="inputType")
    options: Optional[List[str]] = None
    slider_config: Optional[SliderConfig] = Field(None, alias="sliderConfig")
    ingredients: Optional[List[IngredientSpec]] = None
    is_complete: bool = Field(False, alias="isComplete")
    formula_summary: Optional[FormulaSummary] = Field(None, alias="formulaSummary")


class DialogueTurn(CamelModel):
    """One message in the append-only conversation history."""

    sender: Literal["user", "bot"]
    text: str
    component: Optional[str] = None
    input_type: Optional[str] = Field(None, alias="inputType")
    options: Optional[List[str]] = None
    slider_config: Optional[SliderConfig] = Field(None, alias="sliderConfig")
    ingredients: Optional[List[IngredientSpec]] = None
    is_complete: bool = Field(False, alias="isComplete")
    formula_summary: Optional[FormulaSummary] = Field(None, alias="formulaSummary")
    pending_confirmation: bool = Field(False, alias="pendingConfirmation")
    extracted_value: Optional[str] = Field(None, alias="extractedValue")
    is_error: bool = Field(False, alias="isError")
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def user(cls, text: str) -> "DialogueTurn":
        return cls(sender="user", text=text)

    @classmethod
    def bot(cls, text: str, component: Optional[str] = None, **kwargs: Any) -> "DialogueTurn":
        return cls(sender="bot", text=text, component=component, **kwargs)

    @classmethod
    def from_reply(cls, reply: BotReply) -> "DialogueTurn":
        return cls(
            sender="bot",
            text=reply.text,
            component=reply.component,
            input_type=reply.input_type,
            options=reply.options,
            slider_config=reply.slider_config,
            ingredients=reply.ingredients,
            is_complete=reply.is_complete,
            formula_summary=reply.formula_summary,
        )


class CheckoutResult(BaseModel):
    success: bool
    url: Optional[str] = None
    price: Optional[str] = None
    error: Optional[str] = None


def form_value_to_str(value: Optional[FormValue]) -> Optional[str]:
    """Flatten a form value to the string the LLM and storage layers expect."""
    if value is None:
        return None
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)


def parse_dosage_map(value: Optional[FormValue]) -> Dict[str, float]:
    """Decode the Dosage slot; anything unparseable yields an empty map."""
    if not isinstance(value, str) or not value.strip():
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}
    dosages = {}
    for name, dosage in data.items():
        try:
            dosages[str(name)] = float(dosage)
        except (TypeError, ValueError):
            continue
    return dosages
