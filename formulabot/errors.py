"""
Turn-local error conditions for the formula chatbot.

None of these are fatal: the session layer catches them and answers with a bot turn.
"""
import openai


class FormulaBotError(Exception):
    """Base class for errors raised while handling a single turn."""


class GenerationFormatError(FormulaBotError):
    """The LLM returned something that is not the JSON reply we asked for."""

    def __init__(self, raw: str, reason: str = ""):
        self.raw = raw
        self.reason = reason
        super().__init__(f"Unparseable generation ({reason}): {raw[:200]!r}")


class CooldownActiveError(FormulaBotError):
    def __init__(self, remaining: float):
        self.remaining = remaining
        super().__init__(f"Cooldown active, {remaining:.1f}s remaining")


class SessionBusyError(FormulaBotError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has a request in flight")


RATE_LIMIT_MESSAGE = "Whoa, slow down! 😅 I need a quick breather. Please wait a few seconds and try again!"
QUOTA_MESSAGE = "Oops, I've hit my daily limit! 😔 Please try again tomorrow or contact support."
CONFIG_MESSAGE = "Hmm, there's a configuration issue. Please contact support!"
GENERIC_MESSAGE = "Sorry, I'm having trouble connecting right now. Please try again in a moment! 💜"
BUSY_MESSAGE = "Hang on, I'm still working on your last message! ⏳"


def cooldown_message(remaining: float) -> str:
    seconds = max(1, int(round(remaining)))
    return f"Easy there! ⏳ Give me {seconds} more second{'s' if seconds != 1 else ''} and try again."


def format_openai_error(error: Exception) -> str:
    """Map an upstream OpenAI failure to a message the user can act on."""
    message = str(error)

    if isinstance(error, openai.RateLimitError):
        # A 429 is also how OpenAI reports an exhausted quota
        if "quota" in message or "insufficient_quota" in message:
            return QUOTA_MESSAGE
        return RATE_LIMIT_MESSAGE
    if isinstance(error, openai.AuthenticationError) or "invalid_api_key" in message:
        return CONFIG_MESSAGE
    if "Rate limit reached" in message or "rate_limit_exceeded" in message:
        return RATE_LIMIT_MESSAGE
    if "insufficient_quota" in message:
        return QUOTA_MESSAGE
    return GENERIC_MESSAGE
