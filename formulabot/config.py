import logging
import os
from typing import Optional

from dotenv import load_dotenv
from supabase import Client, create_client

# Load environment variables from .env file
load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# AI Configuration - OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))

# Telegram Configuration
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")

# Side tools
BRAVE_SEARCH_API_KEY = os.getenv("BRAVE_SEARCH_API_KEY")
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
OPEN_METEO_FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
OPEN_METEO_GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
DEFAULT_WEATHER_CITY = os.getenv("DEFAULT_WEATHER_CITY", "San Francisco")
DEFAULT_WEATHER_LAT = 37.7749
DEFAULT_WEATHER_LON = -122.4194
TOOL_TIMEOUT_SECONDS = 10

# Checkout boundary
CHECKOUT_ENDPOINT = os.getenv("CHECKOUT_ENDPOINT")
CHECKOUT_TIMEOUT_SECONDS = 15

# Dialogue pacing
COOLDOWN_SECONDS = float(os.getenv("COOLDOWN_SECONDS", "4"))
INVENTORY_CACHE_TTL_SECONDS = float(os.getenv("INVENTORY_CACHE_TTL_SECONDS", "300"))
MAX_FLAVORS = int(os.getenv("MAX_FLAVORS", "2"))
# Idle sessions and cached conversations expire together
SESSION_IDLE_TTL_SECONDS = float(os.getenv("SESSION_IDLE_TTL_SECONDS", "1800"))

logging.info(f"OPENAI_API_KEY loaded: {bool(OPENAI_API_KEY)}")
logging.info(f"Using LLM_MODEL: {OPENAI_MODEL}")

_supabase: Optional[Client] = None


def get_supabase() -> Client:
    """Return the shared Supabase client, creating it on first use."""
    global _supabase
    if _supabase is None:
        if not SUPABASE_URL:
            raise ValueError("SUPABASE_URL environment variable is not set.")
        if not SUPABASE_KEY:
            raise ValueError("SUPABASE_KEY environment variable is not set.")
        _supabase = create_client(
            supabase_url=SUPABASE_URL,
            supabase_key=SUPABASE_KEY
        )
    return _supabase
