import logging
import signal
from typing import Optional

from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import (Application, CommandHandler, ContextTypes,
                          MessageHandler, filters)

from ..session import SessionManager
from .base_bot import BaseBot

logger = logging.getLogger(__name__)

HELP_TEXT = (
    "I'll help you build your own supplement formula! 🧪\n\n"
    "/start - Start (or continue) building your formula\n"
    "/reset - Throw away your answers and start over\n"
    "/help - Show this message\n\n"
    "Just answer my questions in your own words. You can ask me the time, "
    "the weather or a quick math question along the way too."
)


class TelegramBot(BaseBot):
    def __init__(self, token: str, sessions: Optional[SessionManager] = None):
        """Initialize the bot with the given token."""
        super().__init__(sessions)
        self.application = (
            Application.builder()
            .token(token)
            .concurrent_updates(True)
            .build()
        )
        self._setup_handlers()

    def _setup_handlers(self) -> None:
        """Set up all command and message handlers."""
        self.application.add_handler(CommandHandler("start", self.start_command, block=False))
        self.application.add_handler(CommandHandler("reset", self.reset_command, block=False))
        self.application.add_handler(CommandHandler("help", self.help_command, block=False))
        self.application.add_handler(
            MessageHandler(
                filters.TEXT & ~filters.COMMAND,
                self.handle_message,
                block=False
            )
        )
        self.application.add_error_handler(self.error_handler)

    def _setup_shutdown_handlers(self) -> None:
        """Set up graceful shutdown handlers."""
        def signal_handler(signum, frame):
            logger.info("Received shutdown signal, stopping bot gracefully...")
            self.application.stop_running()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def format_recipient_id(self, raw_id: str) -> str:
        return str(raw_id)

    async def send_message(self, recipient: str, message: str, **kwargs) -> bool:
        try:
            await self.application.bot.send_message(chat_id=recipient, text=message, **kwargs)
            return True
        except Exception as e:
            logger.error(f"Error sending Telegram message to {recipient}: {e}")
            return False

    async def send_typing_action(self, recipient: str) -> bool:
        try:
            await self.application.bot.send_chat_action(chat_id=recipient, action=ChatAction.TYPING)
            return True
        except Exception as e:
            logger.warning(f"Error sending typing action to {recipient}: {e}")
            return False

    async def start_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle the /start command."""
        user = update.effective_user
        logger.info(f"User {user.id} ({user.first_name}) started the bot")
        await self.start_conversation(str(update.effective_chat.id), user.first_name)

    async def reset_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle the /reset command."""
        user = update.effective_user
        logger.info(f"User {user.id} ({user.first_name}) reset the conversation")
        await self.reset_conversation(str(update.effective_chat.id), user.first_name)

    async def help_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle the /help command."""
        await update.message.reply_text(HELP_TEXT)

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle incoming messages."""
        user = update.effective_user
        await self.process_user_message(str(update.effective_chat.id), update.message.text, user.first_name)

    async def error_handler(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle errors."""
        error_msg = str(context.error)

        if "Conflict" in error_msg and "getUpdates" in error_msg:
            logger.warning("Bot conflict detected - another instance may be running")
            return

        logger.error(f"Update {update} caused error {context.error}")

        if isinstance(update, Update) and update.effective_message:
            try:
                await update.effective_message.reply_text(
                    "Sorry, something went wrong. Please try again in a moment."
                )
            except Exception as e:
                logger.error(f"Failed to send error message to user: {e}")

    def run_sync(self) -> None:
        """Run the bot with long polling until interrupted."""
        logger.info("Starting Telegram bot...")
        logger.info("Press Ctrl+C to stop the bot")
        self._setup_shutdown_handlers()

        try:
            self.application.run_polling(
                allowed_updates=Update.ALL_TYPES,
                drop_pending_updates=True
            )
        except Exception as e:
            if "Conflict" in str(e):
                logger.error(
                    "Bot conflict error: Another instance is already running. "
                    "Please make sure only one bot instance is active."
                )
            else:
                logger.error(f"Unexpected error: {e}")
            raise
