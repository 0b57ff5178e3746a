import json
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from ..dosage import clamp
from ..models import DialogueTurn, FormulaSummary, IngredientSpec
from ..session import FormulaSession, SessionManager

logger = logging.getLogger(__name__)

ERROR_MESSAGE = "Sorry, something went wrong on my side. Please try again! 💜"


def parse_dosage_reply(text: str, ingredients: List[IngredientSpec]) -> Optional[str]:
    """
    Turn "Caffeine 150, L-Theanine 100mg" into the JSON dosage map the Dosage slot stores.

    Ingredients the user did not mention keep their suggestion; values are clamped to
    the slider range. Returns None when no ingredient is mentioned with a number.
    """
    overrides = {}
    for ing in ingredients:
        pattern = re.compile(re.escape(ing.name) + r"\s*[:=]?\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
        match = pattern.search(text)
        if match:
            overrides[ing.name] = clamp(float(match.group(1)), ing.min, ing.max)
    if not overrides:
        return None
    return json.dumps({ing.name: overrides.get(ing.name, ing.suggested) for ing in ingredients})


def render_summary(summary: FormulaSummary) -> str:
    lines = [f"🧪 {summary.formula_name or 'Custom Formula'} ({summary.delivery_format or 'Stick Pack'})"]
    for ing in summary.ingredients:
        lines.append(f"• {ing.name}: {ing.suggested:g} {ing.unit}")
    if summary.sweetener and summary.sweetener != "None":
        lines.append(f"Sweetener: {summary.sweetener}")
    if summary.flavors and summary.flavors != "None":
        lines.append(f"Flavors: {summary.flavors}")
    if summary.safety_note:
        lines.append(f"⚠️ {summary.safety_note}")
    if summary.redirect_url:
        lines.append(f"Checkout: {summary.redirect_url}")
    return "\n".join(lines)


def render_turn(turn: DialogueTurn) -> str:
    """Plain-text rendering of a bot turn for chat channels without widgets."""
    parts = [turn.text]
    if turn.ingredients:
        parts.append("\n".join(
            f"• {ing.name}: {ing.suggested:g} {ing.unit} (range {ing.min:g}-{ing.max:g})"
            for ing in turn.ingredients
        ))
        parts.append('Reply "ok" to keep these, or send changes like "Caffeine 150".')
    elif turn.options:
        parts.append("Options: " + ", ".join(turn.options))
    if turn.formula_summary:
        parts.append(render_summary(turn.formula_summary))
    return "\n\n".join(p for p in parts if p)


class BaseBot(ABC):
    """
    Base class for chat channel implementations.

    Provides the session lookup, the turn processing and the rendering of bot turns;
    subclasses only deliver text to their platform.
    """

    def __init__(self, sessions: Optional[SessionManager] = None):
        self.sessions = sessions or SessionManager()

    @abstractmethod
    async def send_message(self, recipient: str, message: str, **kwargs) -> bool:
        """
        Send a message to a recipient.

        Returns:
            bool: True if message was sent successfully, False otherwise
        """

    @abstractmethod
    async def send_typing_action(self, recipient: str) -> bool:
        """Show the user that a reply is being generated."""

    @abstractmethod
    def format_recipient_id(self, raw_id: str) -> str:
        """Format the recipient ID according to platform requirements."""

    def session_for(self, recipient: str, user_name: Optional[str] = None) -> FormulaSession:
        return self.sessions.get(recipient, customer_id=recipient, customer_name=user_name)

    async def start_conversation(self, raw_id: str, user_name: Optional[str] = None) -> None:
        recipient = self.format_recipient_id(raw_id)
        turn = await self.session_for(recipient, user_name).start()
        await self.send_message(recipient, render_turn(turn))

    async def reset_conversation(self, raw_id: str, user_name: Optional[str] = None) -> None:
        recipient = self.format_recipient_id(raw_id)
        turn = await self.session_for(recipient, user_name).reset()
        await self.send_message(recipient, render_turn(turn))

    async def process_user_message(self, raw_id: str, message_text: str, user_name: Optional[str] = None) -> None:
        """
        Run one user message through the session and send the reply.

        Args:
            raw_id: Platform identifier of the user
            message_text: The message content
            user_name: Optional user name for logging
        """
        recipient = self.format_recipient_id(raw_id)
        session = self.session_for(recipient, user_name)
        logger.info(f"📥 Received message from {user_name or recipient}: {message_text}")

        try:
            value = message_text
            context = await session.memory.get_conversation(session.session_id)
            last_bot = context.last_bot_turn
            if last_bot and last_bot.component == "Dosage" and last_bot.ingredients:
                value = parse_dosage_reply(message_text, last_bot.ingredients) or message_text

            if not session.busy:
                await self.send_typing_action(recipient)
            turn = await session.handle_selection(value)
        except Exception as e:
            logger.exception(f"Error processing message from {recipient}: {e}")
            await self.send_error_message(recipient, ERROR_MESSAGE)
            return

        if await self.send_message(recipient, render_turn(turn)):
            logger.info(f"✅ Response sent to {user_name or recipient}")
        else:
            logger.error(f"❌ Failed to send response to {user_name or recipient}")

    async def send_error_message(self, recipient: str, error_message: str) -> None:
        try:
            await self.send_message(recipient, error_message)
        except Exception as e:
            logger.error(f"Failed to send error message: {e}")
