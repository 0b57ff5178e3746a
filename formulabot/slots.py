"""
Slot registry and dialogue driver.

The registry is the canonical order in which the guided form is filled. The driver
answers "what should be asked next?" from the form alone, and is what the workflow
falls back on whenever the LLM does not return a usable reply.
"""
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .models import DialogueTurn, FormState


class Slot(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    prompt: str
    input_type: str = "text"


SLOTS: Tuple[Slot, ...] = (
    Slot(key="Goal", prompt="Hey! 👋 What are you looking for today? Energy, focus, hydration, or something else?"),
    Slot(key="Format", prompt="Nice! Do you want Stick Packs, Capsules, or Pods?"),
    Slot(key="Routine", prompt="Perfect! When do you usually need that boost - morning, afternoon, or evening?"),
    Slot(key="Lifestyle", prompt="Cool! Are you pretty active, or more of a desk job kind of person?"),
    Slot(key="Sensitivities", prompt="Got it! Any sensitivities I should know about? Caffeine, allergies, anything like that?"),
    Slot(key="CurrentSupplements", prompt="Almost done! Taking any other supplements or meds?"),
    Slot(key="Experience", prompt="Last thing - are you new to supplements or pretty experienced with them?"),
    Slot(key="Dosage", prompt="Here are your personalized ingredients - adjust the sliders to your preference!",
         input_type="ingredient_sliders"),
    Slot(key="Sweetener", prompt="Sweet! 🌿 Want to add a natural sweetener? We've got Stevia, Monk Fruit, Allulose, or Erythritol - which sounds good?"),
    Slot(key="Flavors", prompt="Awesome! 🎨 Want to add any flavors? Pick up to 2, or skip!"),
    Slot(key="FormulaName", prompt="Love it! 🌟 What would you like to call your formula?"),
)

SLOTS_BY_KEY: Dict[str, Slot] = {slot.key: slot for slot in SLOTS}
SLOT_ORDER: List[str] = [slot.key for slot in SLOTS]

# Only Stick Packs carry a sweetener and flavors
STICK_PACK_ONLY = ("Sweetener", "Flavors")
STICK_PACK = "Stick Pack"

COMPLETION_TEXT = "Your formula is ready! 🎉 Here's everything we put together for you."


def get_slot(key: Optional[str]) -> Optional[Slot]:
    if not key:
        return None
    return SLOTS_BY_KEY.get(key)


def _applies(form: FormState, slot: Slot) -> bool:
    if slot.key not in STICK_PACK_ONLY:
        return True
    fmt = form.get("Format")
    return not fmt or fmt == STICK_PACK


def next_unfilled_slot(form: FormState, skip_inapplicable: bool = False) -> Optional[Slot]:
    """
    Return the first slot in canonical order that is absent from the form.

    Keys the registry does not know about are ignored. With skip_inapplicable the
    Stick-Pack-only slots count as satisfied once a different Format was chosen.
    Returns None when every slot is present.
    """
    for slot in SLOTS:
        if slot.key in form:
            continue
        if skip_inapplicable and not _applies(form, slot):
            continue
        return slot
    return None


def missing_slots(form: FormState, skip_inapplicable: bool = False) -> List[str]:
    return [
        slot.key for slot in SLOTS
        if slot.key not in form and (not skip_inapplicable or _applies(form, slot))
    ]


def fallback_question(form: FormState) -> DialogueTurn:
    """
    Deterministic bot turn asking for the next unfilled slot.

    Once every applicable slot is filled the turn completes the formula instead,
    so the caller can build the summary and never starts over at Goal.
    """
    slot = next_unfilled_slot(form, skip_inapplicable=True)
    if slot is None:
        return DialogueTurn.bot(COMPLETION_TEXT, component=SLOT_ORDER[-1], input_type="text",
                                is_complete=True, is_error=True)
    return DialogueTurn.bot(slot.prompt, component=slot.key, input_type=slot.input_type, is_error=True)
