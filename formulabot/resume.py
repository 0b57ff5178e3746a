"""
Resume-after-detour handling.

A detour is a turn where the user asks something off-topic (time, weather, a fact)
and the model answers it with a side tool instead of filling a slot. Tool calling is
a two-phase exchange (the model requests a tool, then sees its result), and the slot
that was pending before the detour has to survive both phases untouched.
"""
import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .models import FormState
from .slots import SLOT_ORDER, Slot, get_slot, next_unfilled_slot

logger = logging.getLogger(__name__)


class DetourPhase(str, Enum):
    IDLE = "idle"
    TOOL_REQUESTED = "tool_requested"
    TOOL_RESULT_INJECTED = "tool_result_injected"


class ResumeDirective(BaseModel):
    slot: Optional[str]
    forced: bool
    instructions: str


def resume_directive(form: FormState, last_slot: Optional[Slot]) -> ResumeDirective:
    """
    Decide which slot the reply after a detour must ask about.

    The slot being asked before the detour always wins; without one the next
    unfilled slot is used.
    """
    if last_slot is not None:
        return ResumeDirective(
            slot=last_slot.key,
            forced=True,
            instructions=(
                f'CRITICAL: The user just asked an off-topic question which you answered. '
                f'Before they interrupted, you were asking about component "{last_slot.key}". '
                f'You MUST continue asking about "{last_slot.key}" - do NOT advance to the next component. '
                f'Return component: "{last_slot.key}" in your JSON response.'
            ),
        )

    if not form:
        return ResumeDirective(
            slot=SLOT_ORDER[0],
            forced=False,
            instructions=f'No components collected yet. Ask about "{SLOT_ORDER[0]}" to find out what they want.',
        )

    nxt = next_unfilled_slot(form, skip_inapplicable=True)
    collected = ", ".join(form.keys())
    if nxt is None:
        return ResumeDirective(
            slot=None,
            forced=False,
            instructions=f"Components collected: {collected}. Every component is collected; wrap up the formula.",
        )
    return ResumeDirective(
        slot=nxt.key,
        forced=False,
        instructions=f'Components collected: {collected}. Ask about the NEXT missing component in the flow: "{nxt.key}".',
    )


class DetourTracker:
    """
    Explicit state machine for one tool-calling exchange.

        IDLE --tool_requested()--> TOOL_REQUESTED --tool_result_injected()--> TOOL_RESULT_INJECTED
          ^                                                                         |
          +------------------------------- finish() <-------------------------------+
    """

    def __init__(self):
        self.phase = DetourPhase.IDLE
        self.pending_resume_target: Optional[str] = None

    @property
    def in_detour(self) -> bool:
        return self.phase != DetourPhase.IDLE

    def tool_requested(self, pending_slot: Optional[str]) -> None:
        if self.phase == DetourPhase.IDLE:
            # The first request pins the target; chained tool calls keep it
            self.pending_resume_target = pending_slot if get_slot(pending_slot) else None
            logger.info(f"Detour started, resume target: {self.pending_resume_target}")
        self.phase = DetourPhase.TOOL_REQUESTED

    def tool_result_injected(self) -> None:
        if self.phase != DetourPhase.TOOL_REQUESTED:
            raise RuntimeError(f"Tool result injected while {self.phase.value}")
        self.phase = DetourPhase.TOOL_RESULT_INJECTED

    def directive(self, form: FormState) -> ResumeDirective:
        target = get_slot(self.pending_resume_target)
        base = {k: v for k, v in form.items() if k != self.pending_resume_target}
        return resume_directive(base, target)

    def finish(self) -> Optional[str]:
        """Return to IDLE and hand back the slot the reply had to target."""
        target = self.pending_resume_target
        self.phase = DetourPhase.IDLE
        self.pending_resume_target = None
        return target

    def to_dict(self) -> dict:
        return {"phase": self.phase.value, "pending_resume_target": self.pending_resume_target}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DetourTracker":
        tracker = cls()
        if data:
            tracker.phase = DetourPhase(data.get("phase", DetourPhase.IDLE.value))
            tracker.pending_resume_target = data.get("pending_resume_target")
        return tracker
