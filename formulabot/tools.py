import ast
import logging
import operator
from datetime import datetime
from typing import Optional, Tuple

import requests
from langchain_core.tools import tool

from .config import (BRAVE_SEARCH_API_KEY, BRAVE_SEARCH_URL, DEFAULT_WEATHER_CITY,
                     DEFAULT_WEATHER_LAT, DEFAULT_WEATHER_LON, OPEN_METEO_FORECAST_URL,
                     OPEN_METEO_GEOCODING_URL, TOOL_TIMEOUT_SECONDS)

logger = logging.getLogger(__name__)

#=========================================================#
#---------------------- CLOCK TOOLS ----------------------#
#=========================================================#

@tool
def get_current_time() -> str:
    """
    Get the current time. Use this when the user asks what time it is.
    """
    now = datetime.now().astimezone()
    return now.strftime("%I:%M %p %Z").lstrip("0")


@tool
def get_current_date() -> str:
    """
    Get the current date. Use this when the user asks what day or date it is.
    """
    now = datetime.now()
    return f"{now:%A}, {now:%B} {now.day}, {now.year}"

#=========================================================#
#--------------------- WEATHER TOOLS ---------------------#
#=========================================================#

def weather_condition(code: int) -> str:
    """Translate a WMO weather code into a word or two."""
    if code < 0 or code > 99:
        return "cloudy"
    if code == 0:
        return "clear"
    if code <= 3:
        return "partly cloudy"
    if code <= 48:
        return "foggy"
    if code <= 67:
        return "rainy"
    if code <= 77:
        return "snowy"
    if code <= 82:
        return "showery"
    return "stormy"


def geocode_location(location: str) -> Optional[Tuple[float, float, str]]:
    try:
        response = requests.get(
            OPEN_METEO_GEOCODING_URL,
            params={"name": location, "count": 1, "language": "en", "format": "json"},
            timeout=TOOL_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        results = response.json().get("results") or []
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"Geocoding failed for {location!r}: {e}")
        return None
    if not results:
        return None
    first = results[0]
    return first["latitude"], first["longitude"], first.get("name", location)


@tool
def get_weather(location: str = "current") -> str:
    """
    Get the current weather for a city. Use this when the user asks about the weather.

    Args:
        location: City name, or "current" for the default city
    """
    latitude, longitude, city = DEFAULT_WEATHER_LAT, DEFAULT_WEATHER_LON, DEFAULT_WEATHER_CITY
    if location and location.lower() != "current":
        found = geocode_location(location)
        if found:
            latitude, longitude, city = found

    try:
        response = requests.get(
            OPEN_METEO_FORECAST_URL,
            params={
                "latitude": latitude,
                "longitude": longitude,
                "current_weather": "true",
                "temperature_unit": "fahrenheit",
            },
            timeout=TOOL_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        current = response.json().get("current_weather")
    except (requests.RequestException, ValueError) as e:
        logger.error(f"Weather lookup failed: {e}")
        return "Error: Failed to fetch weather data"

    if not current:
        return "Error: Weather data not available"
    temp = round(current["temperature"])
    return f"{temp}°F and {weather_condition(int(current.get('weathercode', -1)))} in {city}"

#=========================================================#
#----------------------- MATH TOOLS ----------------------#
#=========================================================#

_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


def _evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _OPERATORS:
        left, right = _evaluate(node.left), _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > 100:
            raise ValueError("Exponent too large")
        return _OPERATORS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _OPERATORS:
        return _OPERATORS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"Unsupported expression: {ast.dump(node)}")


def safe_eval(expression: str) -> float:
    """Evaluate plain arithmetic; names, calls and attributes are rejected."""
    cleaned = expression.replace("×", "*").replace("÷", "/").replace("^", "**")
    return _evaluate(ast.parse(cleaned.strip(), mode="eval"))


@tool
def calculate(expression: str) -> str:
    """
    Evaluate an arithmetic expression. Use this for math questions like "what's 25 * 4?".

    Args:
        expression: The expression to evaluate, e.g. "25 * 4"
    """
    try:
        result = safe_eval(expression)
    except (SyntaxError, ValueError, TypeError, ZeroDivisionError, OverflowError) as e:
        logger.info(f"Rejected calculation {expression!r}: {e}")
        return "Error: Invalid calculation"
    if isinstance(result, float) and result.is_integer():
        result = int(result)
    return f"{expression} = {result}"

#=========================================================#
#---------------------- SEARCH TOOLS ---------------------#
#=========================================================#

@tool
def search_web(query: str) -> str:
    """
    Search the web for news, facts and general knowledge questions.

    Args:
        query: What to search for
    """
    if not BRAVE_SEARCH_API_KEY:
        return "Error: Web search is not configured."
    try:
        response = requests.get(
            BRAVE_SEARCH_URL,
            params={"q": query, "count": 3},
            headers={"Accept": "application/json", "X-Subscription-Token": BRAVE_SEARCH_API_KEY},
            timeout=TOOL_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        results = (response.json().get("web") or {}).get("results") or []
    except (requests.RequestException, ValueError) as e:
        logger.error(f"Brave search failed: {e}")
        return "Error: Web search temporarily unavailable. Please try again later."

    if not results:
        return f'No search results found for "{query}"'
    return "\n\n".join(
        f"{i}. {r.get('title') or 'No title'}\n   {r.get('description') or 'No description'}"
        for i, r in enumerate(results[:3], start=1)
    )


ALL_TOOLS = [get_current_time, get_current_date, get_weather, calculate, search_web]
