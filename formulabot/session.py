"""
One guided conversation from greeting to checkout.

A session handles one user request at a time. Requests arriving while a reply is
being generated, or before the cooldown has passed, are answered with a short
notice and leave the session untouched.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import openai

from .checkout import CheckoutGateway, build_checkout_payload
from .config import SESSION_IDLE_TTL_SECONDS
from .cooldown import CooldownGate
from .dosage import validate_summary
from .errors import (BUSY_MESSAGE, CooldownActiveError, SessionBusyError, cooldown_message,
                     format_openai_error)
from .inventory import InventoryService
from .memory import ConversationContext, MemoryManager
from .models import (DialogueTurn, FormState, FormValue, FormulaSummary, IngredientSpec,
                     form_value_to_str, parse_dosage_map)
from .normalizer import DEFAULT_FORMULA_NAME, Normalizer, extract_formula_name
from .repository import FormulaRepository
from .slots import SLOT_ORDER, STICK_PACK, get_slot, next_unfilled_slot
from .workflow import Workflow

logger = logging.getLogger(__name__)


def returning_customer_greeting(formulas: List[Dict[str, Any]], name: Optional[str] = None) -> Optional[str]:
    """Welcome-back text for a customer with saved formulas, newest first; None for new customers."""
    if not formulas:
        return None
    first_name = name.split(" ")[0] if name else None
    last_name = formulas[0].get("formula_name_component")

    if len(formulas) == 1:
        if first_name:
            return (f"Welcome back, {first_name}! Great to see you again. Last time you created "
                    f"\"{last_name or 'your custom formula'}\" - shall we build something new today? 💪")
        return f"Welcome back! Last time you created \"{last_name or 'a custom formula'}\" - ready for another? 💪"

    if first_name:
        return (f"Hey {first_name}! You're back! 🎉 You've created {len(formulas)} formulas with us. "
                "Want to try something new or reorder a favorite?")
    return f"Hey, welcome back! 🎉 You've made {len(formulas)} formulas with us before. Ready to create another?"


def build_formula_summary(form: FormState, ingredients: List[IngredientSpec],
                          base: Optional[FormulaSummary] = None) -> FormulaSummary:
    """Final summary from the collected form, using the dosages the user confirmed."""
    dosages = parse_dosage_map(form.get("Dosage"))
    chosen = [ing.model_copy(update={"suggested": dosages.get(ing.name, ing.suggested)}) for ing in ingredients]
    if not chosen and base:
        chosen = list(base.ingredients)

    return FormulaSummary(
        ingredients=chosen,
        delivery_format=form_value_to_str(form.get("Format")) or STICK_PACK,
        formula_name=form_value_to_str(form.get("FormulaName")) or DEFAULT_FORMULA_NAME,
        safety_note=base.safety_note if base else None,
        goal=form_value_to_str(form.get("Goal")),
        sweetener=form_value_to_str(form.get("Sweetener")),
        flavors=form_value_to_str(form.get("Flavors")),
        routine=form_value_to_str(form.get("Routine")),
        lifestyle=form_value_to_str(form.get("Lifestyle")),
        sensitivities=form_value_to_str(form.get("Sensitivities")),
        current_supplements=form_value_to_str(form.get("CurrentSupplements")),
        experience=form_value_to_str(form.get("Experience")),
    )


def describe_dosages(text: str, ingredients: List[IngredientSpec]) -> str:
    """Readable version of a confirmed dosage map for the dialogue history."""
    dosages = parse_dosage_map(text)
    if not dosages or not ingredients:
        return text
    return ", ".join(f"{ing.name}: {dosages.get(ing.name, ing.suggested):g} {ing.unit}" for ing in ingredients)


class FormulaSession:
    def __init__(self, session_id: str, workflow: Workflow, memory: MemoryManager,
                 repository: Optional[FormulaRepository] = None,
                 checkout: Optional[CheckoutGateway] = None,
                 normalizer: Optional[Normalizer] = None,
                 cooldown: Optional[CooldownGate] = None,
                 customer_id: Optional[str] = None,
                 customer_name: Optional[str] = None,
                 inventory: Optional[InventoryService] = None):
        self.session_id = session_id
        self.workflow = workflow
        self.inventory = inventory or workflow.inventory
        self.memory = memory
        self.repository = repository or FormulaRepository()
        self.checkout = checkout or CheckoutGateway()
        self.normalizer = normalizer or Normalizer()
        self.cooldown = cooldown or CooldownGate()
        self.customer_id = customer_id
        self.customer_name = customer_name
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _ensure_idle(self) -> None:
        if self.busy:
            raise SessionBusyError(self.session_id)

    async def start(self) -> DialogueTurn:
        """Greet the user, or repeat the last question of a conversation already underway."""
        context = await self.memory.get_conversation(self.session_id)
        if context.history and context.last_bot_turn:
            return context.last_bot_turn

        context.customer_id = self.customer_id
        goal = get_slot(SLOT_ORDER[0])
        text = self._greeting() or goal.prompt
        turn = DialogueTurn.bot(text, component=goal.key, input_type=goal.input_type)
        context.add_turn(turn)
        await self.memory.save_conversation(context)
        return turn

    def _greeting(self) -> Optional[str]:
        if not self.customer_id:
            return None
        try:
            formulas = self.repository.get_formulas_by_customer(self.customer_id)
        except Exception as e:
            logger.error(f"Error looking up formulas for customer {self.customer_id}: {e}")
            return None
        greeting = returning_customer_greeting(formulas, self.customer_name)
        if greeting:
            logger.info(f"Returning customer {self.customer_id} with {len(formulas)} formulas")
        return greeting

    async def reset(self) -> DialogueTurn:
        """Forget the conversation and greet again."""
        if not await self.memory.clear_conversation(self.session_id):
            context = await self.memory.get_conversation(self.session_id)
            context.reset()
            await self.memory.save_conversation(context)
        self.cooldown.reset()
        logger.info(f"Session {self.session_id} reset")
        return await self.start()

    async def handle_selection(self, value: FormValue, component: Optional[str] = None) -> DialogueTurn:
        """
        Process one user answer and return the next bot turn.

        The answer is normalized for the slot being asked and only committed to the
        form once the reply is known not to be a detour.
        """
        try:
            self._ensure_idle()
            self.cooldown.check()
        except SessionBusyError as e:
            logger.warning(str(e))
            return DialogueTurn.bot(BUSY_MESSAGE, is_error=True)
        except CooldownActiveError as e:
            logger.info(f"Session {self.session_id}: {e}")
            return DialogueTurn.bot(cooldown_message(e.remaining), is_error=True)

        async with self._lock:
            context = await self.memory.get_conversation(self.session_id)
            return await self._handle(context, value, component)

    async def _handle(self, context: ConversationContext, value: FormValue, component: Optional[str]) -> DialogueTurn:
        previous_bot = context.last_bot_turn
        slot_key = component or (previous_bot.component if previous_bot else None)
        if not get_slot(slot_key):
            nxt = next_unfilled_slot(context.form, skip_inapplicable=True)
            slot_key = nxt.key if nxt else None

        raw = form_value_to_str(value) or ""
        user_turn = DialogueTurn.user(describe_dosages(raw, context.ingredients) if slot_key == "Dosage" else raw)

        answer = None
        if slot_key:
            answer = {slot_key: self.normalizer.normalize(raw, slot_key, previous_bot)}

        rejection = None
        if slot_key == "FormulaName" and answer and answer[slot_key] != DEFAULT_FORMULA_NAME:
            rejection = self._check_name(answer[slot_key])
        elif slot_key == "Flavors" and answer and answer[slot_key] != "None":
            rejection = self._check_flavors(answer[slot_key])
        if rejection:
            context.add_turn(user_turn)
            context.add_turn(rejection)
            await self.memory.save_conversation(context)
            return rejection

        history = context.history + [user_turn]
        try:
            result = await self.workflow.run(context.form, history, pending_slot=slot_key, answer=answer)
        except openai.OpenAIError as e:
            logger.error(f"OpenAI error in session {self.session_id}: {e}")
            return DialogueTurn.bot(format_openai_error(e), is_error=True)

        context.add_turn(user_turn)
        if answer and not result.detoured:
            context.form.update(answer)
            logger.info(f"Session {self.session_id} committed {slot_key} = {answer[slot_key]!r}")
        elif result.detoured:
            logger.info(f"Session {self.session_id} detour, {slot_key} stays pending")

        reply = result.reply
        turn = DialogueTurn.from_reply(reply)
        turn.is_error = result.used_fallback

        if reply.ingredients:
            context.ingredients = list(reply.ingredients)
        elif reply.component == "Dosage" and context.ingredients:
            turn.ingredients = list(context.ingredients)

        if reply.component == "FormulaName" and not reply.is_complete:
            suggestion = extract_formula_name(reply.text)
            if suggestion:
                turn.pending_confirmation = True
                turn.extracted_value = suggestion

        if reply.is_complete:
            turn.formula_summary = await self._complete(context, reply.formula_summary)

        context.add_turn(turn)
        await self.memory.save_conversation(context)
        return turn

    def _check_name(self, name: str) -> Optional[DialogueTurn]:
        try:
            availability = self.repository.check_name_availability(name)
        except Exception as e:
            logger.error(f"Error checking name availability for {name!r}: {e}")
            return None
        if availability.get("available", True):
            return None
        slot = get_slot("FormulaName")
        reason = availability.get("reason") or "it's not available"
        return DialogueTurn.bot(
            f"Oh no, \"{name}\" can't be used ({reason}) 😅 What else would you like to call it?",
            component=slot.key,
            input_type=slot.input_type,
        )

    def _check_flavors(self, flavors: str) -> Optional[DialogueTurn]:
        names = [name.strip() for name in flavors.split(",") if name.strip()]
        missing = self.inventory.unavailable_flavors(names)
        if not missing:
            return None
        logger.info(f"Session {self.session_id}: out of stock {missing}")
        slot = get_slot("Flavors")
        verb = "is" if len(missing) == 1 else "are"
        text = f"Sorry, {' and '.join(missing)} {verb} out of stock right now 😔"
        in_stock = self.inventory.flavor_list_prompt()
        if in_stock:
            text += f" We've got {in_stock}. Which would you like, or want to skip?"
        else:
            text += " Want to pick another flavor, or skip?"
        return DialogueTurn.bot(text, component=slot.key, input_type=slot.input_type)

    async def _complete(self, context: ConversationContext, base: Optional[FormulaSummary]) -> FormulaSummary:
        """Build the final summary, save the formula and create the checkout."""
        summary, _ = validate_summary(build_formula_summary(context.form, context.ingredients, base))

        try:
            self.repository.save_formula(
                self.session_id,
                context.form,
                customer_id=self.customer_id,
                formula_data={"form": context.form, "summary": summary.model_dump(by_alias=True)},
            )
        except Exception as e:
            logger.error(f"Error saving formula for session {self.session_id}: {e}")

        payload = build_checkout_payload(context.form, summary.ingredients, self.session_id)
        checkout = await asyncio.to_thread(self.checkout.create_checkout, payload)
        if checkout.success:
            summary = summary.model_copy(update={"redirect_url": checkout.url})
        return summary


class SessionManager:
    """
    Keeps one FormulaSession per session id.

    Sessions idle for longer than idle_ttl seconds are dropped on the next lookup;
    their conversation stays in memory storage and is picked up again by a new session.
    """

    def __init__(self, workflow: Optional[Workflow] = None, memory: Optional[MemoryManager] = None,
                 repository: Optional[FormulaRepository] = None, checkout: Optional[CheckoutGateway] = None,
                 idle_ttl: float = SESSION_IDLE_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.workflow = workflow or Workflow()
        self.memory = memory or MemoryManager()
        self.repository = repository or FormulaRepository()
        self.checkout = checkout or CheckoutGateway()
        self.idle_ttl = idle_ttl
        self.clock = clock
        self._sessions: Dict[str, FormulaSession] = {}
        self._last_used: Dict[str, float] = {}

    def get(self, session_id: str, customer_id: Optional[str] = None,
            customer_name: Optional[str] = None) -> FormulaSession:
        self.evict_idle()
        session = self._sessions.get(session_id)
        if session is None:
            session = FormulaSession(
                session_id,
                workflow=self.workflow,
                memory=self.memory,
                repository=self.repository,
                checkout=self.checkout,
                customer_id=customer_id,
                customer_name=customer_name,
            )
            self._sessions[session_id] = session
        self._last_used[session_id] = self.clock()
        return session

    def evict_idle(self) -> int:
        now = self.clock()
        idle = [
            session_id for session_id, last_used in self._last_used.items()
            if now - last_used >= self.idle_ttl and not self._sessions[session_id].busy
        ]
        for session_id in idle:
            self.drop(session_id)
        if idle:
            logger.info(f"Evicted {len(idle)} idle sessions")
        return len(idle)

    def drop(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._last_used.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
