import json
import logging
import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Tuple, TypedDict

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from langgraph.prebuilt import ToolNode
from pydantic import BaseModel, ValidationError

from .config import OPENAI_MODEL, OPENAI_TEMPERATURE
from .dosage import ClampRecord, validate_ingredient_dosages, validate_summary
from .errors import GenerationFormatError
from .inventory import InventoryService
from .models import BotReply, DialogueTurn, FormState, FormulaSummary, form_value_to_str
from .prompts import FormulaPrompts
from .resume import DetourTracker
from .slots import fallback_question, get_slot
from .tools import ALL_TOOLS

logger = logging.getLogger(__name__)

MAX_REFORMAT_ATTEMPTS = 1

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?|\n?```\s*$")


class FormulaState(TypedDict, total=False):
    """
    State that flows through the generation graph for one user turn.

    messages holds only this turn's exchange with the model (replies, tool calls,
    tool results, reformat requests). The prompt prefix is rebuilt by each node
    from form, answer and history.
    """

    messages: Annotated[List[BaseMessage], add_messages]
    form: FormState                      # committed slot values
    answer: Optional[Dict[str, str]]     # tentative {slot: value} for this turn
    history: List[DialogueTurn]
    pending_slot: Optional[str]          # slot the previous bot turn asked about
    detour: Dict[str, Any]               # serialized DetourTracker
    detoured: bool
    resume_target: Optional[str]
    reply: Optional[BotReply]
    clamps: List[ClampRecord]
    format_attempts: int
    used_fallback: bool


class WorkflowResult(BaseModel):
    reply: BotReply
    detoured: bool = False
    resume_target: Optional[str] = None
    clamps: List[ClampRecord] = []
    used_fallback: bool = False


def strip_code_fences(content: str) -> str:
    return _FENCE_RE.sub("", content.strip()).strip()


def parse_reply(raw: str) -> BotReply:
    """Decode the model's JSON reply, raising GenerationFormatError when it is unusable."""
    cleaned = strip_code_fences(raw or "")
    if not cleaned:
        raise GenerationFormatError(raw or "", "empty response")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise GenerationFormatError(raw, f"invalid JSON: {e.msg}")
    if not isinstance(data, dict):
        raise GenerationFormatError(raw, "JSON is not an object")
    try:
        return BotReply.model_validate(data)
    except ValidationError as e:
        raise GenerationFormatError(raw, f"schema mismatch: {e.error_count()} errors")


def validate_reply(reply: BotReply) -> Tuple[BotReply, List[ClampRecord]]:
    """Run every ingredient list in the reply through the dosage validator."""
    records: List[ClampRecord] = []
    update: Dict[str, Any] = {}
    if reply.ingredients:
        update["ingredients"], clamped = validate_ingredient_dosages(reply.ingredients)
        records.extend(clamped)
    if reply.formula_summary and reply.formula_summary.ingredients:
        update["formula_summary"], clamped = validate_summary(reply.formula_summary)
        records.extend(clamped)
    return (reply.model_copy(update=update) if update else reply), records


def force_component(reply: BotReply, target: Optional[str]) -> BotReply:
    """Make a post-detour reply ask about the slot that was pending before the detour."""
    slot = get_slot(target)
    if slot is None or reply.component == slot.key:
        return reply
    logger.warning(f"Reply after detour asked about {reply.component}, forcing {slot.key}")
    return reply.model_copy(update={
        "text": f"{reply.text.rstrip()} {slot.prompt}".strip(),
        "component": slot.key,
        "input_type": slot.input_type,
        "options": None,
        "slider_config": None,
        "is_complete": False,
        "formula_summary": None,
    })


class Workflow:
    def __init__(self, llm: Optional[ChatOpenAI] = None, inventory: Optional[InventoryService] = None,
                 prompts: Optional[FormulaPrompts] = None):
        self.llm = llm or ChatOpenAI(
            model=OPENAI_MODEL,
            temperature=OPENAI_TEMPERATURE,
        )
        self.llm_with_tools = self.llm.bind_tools(ALL_TOOLS)
        self.json_llm = self.llm.bind(response_format={"type": "json_object"})
        self.inventory = inventory or InventoryService()
        self.prompts = prompts or FormulaPrompts()
        self.workflow = self._build_workflow()

    def _build_workflow(self):
        """Build the generation graph."""
        graph = StateGraph(FormulaState)

        graph.add_node("generate", self.generate_step)
        graph.add_node("tools", ToolNode(ALL_TOOLS))
        graph.add_node("resume", self.resume_step)
        graph.add_node("parse", self.parse_step)
        graph.add_node("reformat", self.reformat_step)
        graph.add_node("fallback", self.fallback_step)

        graph.set_entry_point("generate")

        # Off-topic questions detour through the tools before the reply is parsed
        graph.add_conditional_edges(
            "generate",
            self.should_use_tools,
            {
                "tools": "tools",
                "parse": "parse"
            }
        )
        graph.add_edge("tools", "resume")
        graph.add_edge("resume", "parse")

        graph.add_conditional_edges(
            "parse",
            self.should_retry_parse,
            {
                "done": END,
                "reformat": "reformat",
                "fallback": "fallback"
            }
        )
        graph.add_edge("reformat", "parse")
        graph.add_edge("fallback", END)

        return graph.compile()

#=========================================================#
#-------------------- CONTEXT BUILDING -------------------#
#=========================================================#

    def _inventory_context(self) -> str:
        return self.prompts.inventory_context(
            summary=self.inventory.inventory_summary(),
            flavor_list=self.inventory.flavor_list_prompt(),
            sweetener_list=self.inventory.sweetener_list_prompt(),
            max_flavors=self.inventory.max_flavors,
        )

    def _context(self, state: FormulaState, tentative: bool) -> List[BaseMessage]:
        form = dict(state.get("form") or {})
        if tentative and state.get("answer"):
            form.update(state["answer"])
        return self.prompts.build_messages(
            form,
            state.get("history") or [],
            self.inventory.ingredients_prompt(),
            self._inventory_context(),
        )

#=========================================================#
#-------------------- GRAPH WORKFLOW --------------------#
#=========================================================#

    async def generate_step(self, state: FormulaState) -> Dict[str, Any]:
        """Ask the model for the next bot turn, with side tools available."""
        context = self._context(state, tentative=True)
        response = await self.llm_with_tools.ainvoke(context)

        tracker = DetourTracker()
        if getattr(response, "tool_calls", None):
            tracker.tool_requested(state.get("pending_slot"))
            logger.info(f"Model requested tools: {[tc['name'] for tc in response.tool_calls]}")

        return {
            "messages": [response],
            "detour": tracker.to_dict(),
            "detoured": tracker.in_detour,
            "format_attempts": 0,
        }

    async def resume_step(self, state: FormulaState) -> Dict[str, Any]:
        """Answer with the tool results while steering back to the pending slot."""
        tracker = DetourTracker.from_dict(state.get("detour"))
        tracker.tool_result_injected()

        directive = tracker.directive(state.get("form") or {})
        logger.info(f"Resuming after detour, target: {directive.slot} (forced: {directive.forced})")

        # The tentative answer was the off-topic question, so it stays out of the prompt
        prefix = self._context(state, tentative=False)
        context = (
            prefix[:1]
            + [SystemMessage(content=self.prompts.resume_message(directive.instructions))]
            + prefix[1:]
            + list(state["messages"])
        )
        response = await self.json_llm.ainvoke(context)

        return {"messages": [response], "detour": tracker.to_dict()}

    async def parse_step(self, state: FormulaState) -> Dict[str, Any]:
        """Validate the last model output as a BotReply and clamp its dosages."""
        last = state["messages"][-1]
        raw = last.content if isinstance(last.content, str) else json.dumps(last.content)

        try:
            reply = parse_reply(raw)
        except GenerationFormatError as e:
            logger.warning(f"Generation format error: {e}")
            return {"reply": None}

        reply, clamps = validate_reply(reply)
        update: Dict[str, Any] = {"reply": reply, "clamps": clamps}

        tracker = DetourTracker.from_dict(state.get("detour"))
        if tracker.in_detour:
            target = tracker.finish()
            update["reply"] = force_component(reply, target)
            update["resume_target"] = target
            update["detour"] = tracker.to_dict()
        return update

    async def reformat_step(self, state: FormulaState) -> Dict[str, Any]:
        """Ask the model once to restate its last answer as JSON."""
        request = HumanMessage(content=self.prompts.REFORMAT_INSTRUCTION)
        context = self._context(state, tentative=not state.get("detoured")) + list(state["messages"]) + [request]
        response = await self.json_llm.ainvoke(context)
        return {
            "messages": [request, response],
            "format_attempts": state.get("format_attempts", 0) + 1,
        }

    async def fallback_step(self, state: FormulaState) -> Dict[str, Any]:
        """Ask the next question deterministically when the model gave nothing usable."""
        tracker = DetourTracker.from_dict(state.get("detour"))
        update: Dict[str, Any] = {"used_fallback": True}

        form = dict(state.get("form") or {})
        if tracker.in_detour:
            target = tracker.finish()
            update["resume_target"] = target
            update["detour"] = tracker.to_dict()
            form.pop(target, None)
        else:
            target = None
            form.update(state.get("answer") or {})

        slot = get_slot(target)
        if slot is not None:
            update["reply"] = BotReply(text=slot.prompt, component=slot.key, input_type=slot.input_type)
        else:
            turn = fallback_question(form)
            update["reply"] = BotReply(
                text=turn.text,
                component=turn.component,
                input_type=turn.input_type or "text",
                is_complete=turn.is_complete,
                formula_summary=FormulaSummary(
                    formula_name=form_value_to_str(form.get("FormulaName")),
                    delivery_format=form_value_to_str(form.get("Format")),
                    goal=form_value_to_str(form.get("Goal")),
                ) if turn.is_complete else None,
            )

        logger.warning(f"Falling back to default question for {update['reply'].component}")
        return update

    def should_use_tools(self, state: FormulaState) -> Literal["tools", "parse"]:
        """Determine if the model asked for side tools."""
        last_message = state["messages"][-1] if state.get("messages") else None
        if isinstance(last_message, AIMessage) and last_message.tool_calls:
            return "tools"
        return "parse"

    def should_retry_parse(self, state: FormulaState) -> Literal["done", "reformat", "fallback"]:
        if state.get("reply") is not None:
            return "done"
        if state.get("format_attempts", 0) < MAX_REFORMAT_ATTEMPTS:
            return "reformat"
        return "fallback"

#=========================================================#
#------------------------- ENTRY -------------------------#
#=========================================================#

    async def run(self, form: FormState, history: Sequence[DialogueTurn], pending_slot: Optional[str] = None,
                  answer: Optional[Dict[str, str]] = None) -> WorkflowResult:
        """Produce the next bot reply for a conversation."""
        initial_state: FormulaState = {
            "messages": [],
            "form": dict(form),
            "answer": answer,
            "history": list(history),
            "pending_slot": pending_slot,
            "detour": DetourTracker().to_dict(),
            "detoured": False,
            "resume_target": None,
            "reply": None,
            "clamps": [],
            "format_attempts": 0,
            "used_fallback": False,
        }
        final_state = await self.workflow.ainvoke(initial_state)

        return WorkflowResult(
            reply=final_state["reply"],
            detoured=final_state.get("detoured", False),
            resume_target=final_state.get("resume_target"),
            clamps=final_state.get("clamps") or [],
            used_fallback=final_state.get("used_fallback", False),
        )
