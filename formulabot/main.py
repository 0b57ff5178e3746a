import argparse
import asyncio
import logging
import sys

from .config import CHECKOUT_ENDPOINT, OPENAI_API_KEY, SUPABASE_URL, TELEGRAM_BOT_TOKEN

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def mask(secret: str) -> str:
    return f"{'*' * 10}{secret[-4:] if len(secret) > 4 else '****'}"


def print_config_status() -> bool:
    """Print the configuration status; False when the bot cannot start."""
    print("\n" + "=" * 50)
    print("🔧 CONFIGURATION STATUS")
    print("=" * 50)

    print(f"📱 Telegram Bot: {'✅ Configured' if TELEGRAM_BOT_TOKEN else '❌ Not configured'}")
    if TELEGRAM_BOT_TOKEN:
        print(f"   Token: {mask(TELEGRAM_BOT_TOKEN)}")
    print(f"🧠 OpenAI: {'✅ Configured' if OPENAI_API_KEY else '❌ Not configured'}")
    print(f"🗄️  Supabase: {'✅ Configured' if SUPABASE_URL else '❌ Not configured'}")
    print(f"🛒 Checkout: {CHECKOUT_ENDPOINT or '⚠️ Not configured (summaries only)'}")
    print("\n" + "=" * 50)

    if not TELEGRAM_BOT_TOKEN or not OPENAI_API_KEY:
        print("❌ Missing configuration! Please set TELEGRAM_BOT_TOKEN and OPENAI_API_KEY in your .env file")
        return False
    return True


def run_telegram_bot():
    """Run the Telegram bot."""
    from .bots.telegram_bot import TelegramBot

    logger.info("🤖 Starting Telegram bot...")
    bot = TelegramBot(TELEGRAM_BOT_TOKEN)
    bot.run_sync()


async def cleanup_conversations() -> int:
    from .memory import MemoryManager

    return await MemoryManager().cleanup_old_conversations()


def main():
    """Main function with argument parsing."""
    parser = argparse.ArgumentParser(description="Supplement Formula Bot")
    parser.add_argument("--config", action="store_true", help="Show configuration status and exit")
    parser.add_argument("--cleanup", action="store_true", help="Delete stale conversations and exit")
    args = parser.parse_args()

    if args.config:
        print_config_status()
        return

    if args.cleanup:
        cleaned = asyncio.run(cleanup_conversations())
        print(f"🧹 Removed {cleaned} stale conversations")
        return

    if not print_config_status():
        sys.exit(1)

    try:
        run_telegram_bot()
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
