"""
Conversation memory for the formula chatbot.
Keeps the form and dialogue of each session in Supabase, with an in-memory cache in front.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from .config import SESSION_IDLE_TTL_SECONDS, get_supabase
from .models import DialogueTurn, FormState, IngredientSpec

logger = logging.getLogger(__name__)


class ConversationContext:
    """Everything that must survive between two turns of one session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.customer_id: Optional[str] = None
        self.form: FormState = {}
        self.history: List[DialogueTurn] = []
        # Ingredients of the last slider turn; the completion summary is built from them
        self.ingredients: List[IngredientSpec] = []
        self.last_activity = datetime.now(timezone.utc)
        self.created_at = datetime.now(timezone.utc)

    def add_turn(self, turn: DialogueTurn):
        self.history.append(turn)
        self.last_activity = datetime.now(timezone.utc)

    @property
    def last_bot_turn(self) -> Optional[DialogueTurn]:
        for turn in reversed(self.history):
            if turn.sender == "bot":
                return turn
        return None

    def reset(self):
        self.form = {}
        self.history = []
        self.ingredients = []
        self.last_activity = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize context for storage."""
        return {
            "session_id": self.session_id,
            "customer_id": self.customer_id,
            "form": self.form,
            "history": [turn.model_dump(by_alias=True) for turn in self.history],
            "ingredients": [ing.model_dump() for ing in self.ingredients],
            "last_activity": self.last_activity.isoformat(),
            "created_at": self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConversationContext':
        """Deserialize context from storage."""
        context = cls(data["session_id"])
        context.customer_id = data.get("customer_id")
        context.form = data.get("form") or {}
        context.history = [DialogueTurn.model_validate(t) for t in data.get("history") or []]
        context.ingredients = [IngredientSpec.model_validate(i) for i in data.get("ingredients") or []]

        if data.get("last_activity"):
            context.last_activity = datetime.fromisoformat(data["last_activity"].replace('Z', '+00:00'))
        if data.get("created_at"):
            context.created_at = datetime.fromisoformat(data["created_at"].replace('Z', '+00:00'))

        return context


class MemoryManager:
    """
    Session memory backed by Supabase.

    Storage failures are logged and never end a conversation; the cached context
    keeps the session going.
    """

    def __init__(self, client: Optional[Client] = None, table_name: str = "formula_conversations"):
        self._client = client
        self.table_name = table_name
        self.ttl_days = 7  # Auto-cleanup after 7 days of inactivity

        self._cache: Dict[str, ConversationContext] = {}
        self._cache_ttl = timedelta(seconds=SESSION_IDLE_TTL_SECONDS)

    @property
    def supabase(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def get_conversation(self, session_id: str) -> ConversationContext:
        """
        Get conversation context. Creates new if doesn't exist.
        """
        cached_context = self._cache.get(session_id)
        if cached_context and datetime.now(timezone.utc) - cached_context.last_activity < self._cache_ttl:
            return cached_context

        try:
            result = self.supabase.table(self.table_name).select("*").eq("session_id", session_id).limit(1).execute()
            if result.data:
                context = ConversationContext.from_dict(result.data[0])
                self._cache[session_id] = context
                logger.info(f"Loaded conversation from DB: {session_id}, {len(context.history)} turns")
                return context
        except Exception as e:
            logger.error(f"Error getting conversation {session_id}: {e}")

        if cached_context:
            return cached_context
        context = ConversationContext(session_id)
        self._cache[session_id] = context
        logger.info(f"Created new conversation: {session_id}")
        return context

    async def save_conversation(self, context: ConversationContext):
        self._cache[context.session_id] = context
        try:
            result = self.supabase.table(self.table_name).upsert(
                context.to_dict(),
                on_conflict="session_id"
            ).execute()
            if result.data:
                logger.info(f"Saved conversation: {context.session_id}, {len(context.history)} turns")
            else:
                logger.warning(f"Failed to save conversation: {context.session_id}")
        except Exception as e:
            logger.error(f"Error saving conversation {context.session_id}: {e}")

    async def clear_conversation(self, session_id: str) -> bool:
        """Forget a session entirely, in storage and in the cache."""
        self._cache.pop(session_id, None)
        try:
            self.supabase.table(self.table_name).delete().eq("session_id", session_id).execute()
            logger.info(f"Cleared conversation: {session_id}")
            return True
        except Exception as e:
            logger.error(f"Error clearing conversation {session_id}: {e}")
            return False

    async def cleanup_old_conversations(self) -> int:
        """
        Clean up conversations older than TTL.
        This should be run periodically (e.g., daily cron job).
        """
        try:
            cutoff_date = datetime.now(timezone.utc) - timedelta(days=self.ttl_days)

            result = self.supabase.table(self.table_name).delete().lt(
                "last_activity",
                cutoff_date.isoformat()
            ).execute()

            cleaned_count = len(result.data) if result.data else 0
            logger.info(f"Cleaned up {cleaned_count} old conversations")
            return cleaned_count

        except Exception as e:
            logger.error(f"Error cleaning up old conversations: {e}")
            return 0
