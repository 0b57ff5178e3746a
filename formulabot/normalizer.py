"""
Free-text normalizer.

Turns whatever the user typed for a slot into the canonical value stored in the form.
Normalization runs as a chain of small strategies; the first one that returns a value
wins:

1. confirmation of a value the bot proposed in its previous turn
2. slot keywords found in the user's own words
3. pass-through of any answer that is not a generic phrase
4. pass-through when there is no bot message to fall back on
5. extraction from the previous bot message (or a curated default)

A "generic phrase" is one of FORBIDDEN_PHRASES ("sure", "idk", "surprise me", ...).
Phrases are compared as whole-token runs, so "no" matches "no thanks" and "oh no"
but never "know".
"""
import json
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import MAX_FLAVORS
from .models import DialogueTurn

logger = logging.getLogger(__name__)

AFFIRMATIONS = (
    "yes", "yeah", "sure", "sounds good", "correct", "right",
    "ok", "okay", "yep", "yup", "perfect", "great",
)

FORBIDDEN_PHRASES = (
    "sure", "yeah", "great", "ok", "yes", "okay",
    "any", "sounds good", "perfect", "awesome",
    "what do you recommend", "what do you suggest", "what do you think",
    "whatever you want", "whatever you like", "whatever", "up to you", "you choose", "you decide",
    "i don't know", "idk", "not sure", "dunno",
    "surprise me", "dealer's choice", "your choice",
    "done", "finished", "good", "fine", "nice", "cool", "yep", "yup", "no", "nope",
)

# (canonical value, keywords). A keyword ending in "*" is a stem and matches any word
# starting with it; other keywords match whole words, plurals included.
KeywordTable = Sequence[Tuple[str, Sequence[str]]]

SLOT_KEYWORDS: Dict[str, KeywordTable] = {
    "Goal": (
        ("Energy", ("energ*", "tired", "coffee", "red bull", "exhausted")),
        ("Focus", ("focus*", "concentrat*", "work")),
        ("Hydration", ("hydrat*", "water", "thirsty")),
        ("Sleep", ("sleep*", "rest", "bed")),
        ("Recovery", ("recover*", "gym", "workout*")),
    ),
    "Format": (
        ("Stick Pack", ("powder*", "mix*", "stick*", "stick-pack*", "packet*")),
        ("Capsule", ("pill*", "capsule*", "tablet*")),
        ("Pod", ("pod", "coffee maker")),
    ),
    "Routine": (
        ("Morning", ("morning*", "breakfast", "wake*", "waking")),
        ("Afternoon", ("afternoon*", "lunch", "midday")),
        ("Evening", ("evening*", "night*", "dinner")),
        ("All day", ("all day", "all", "throughout")),
    ),
    "Lifestyle": (
        ("Active", ("active", "gym", "workout*", "work out", "athlete*", "athletic", "exercis*")),
        ("Sedentary", ("desk", "office", "sedentary", "sit", "sitting")),
        ("Moderate", ("moderate*", "sometimes")),
    ),
    "Sensitivities": (
        ("Caffeine sensitive", ("caffeine", "jitter*", "coffee", "stimulant*")),
    ),
    "Experience": (
        ("Beginner", ("beginner*", "new", "never", "newbie")),
        ("Experienced", ("experienced", "advanced", "years", "expert*")),
        ("Moderate", ("moderate*", "intermediate", "some", "a bit")),
    ),
}

GOAL_CANDIDATES = ("Energy", "Focus", "Hydration", "Sleep", "Recovery")
SWEETENERS = ("Stevia", "Monk Fruit", "Allulose", "Erythritol")
DEFAULT_SWEETENER = "Stevia"
FLAVOR_NAMES = (
    "mango", "sour cherry", "watermelon", "strawberry banana", "root beer",
    "green apple", "fruit punch", "ice pop", "gummy bear", "blue raspberry",
    "pineapple", "strawberry", "raspberry", "orange", "lemon", "lime",
    "lemonade", "cotton candy", "bubble gum", "pink lemonade", "coconut", "banana",
)
DEFAULT_FLAVOR = "Mango"
SKIP_PHRASES = ("skip", "none", "no", "nope", "nah", "no thanks", "plain", "unflavored")
DEFAULT_FORMULA_NAME = "Custom Formula"

# Values stored when a generic answer leaves nothing to extract
NEUTRAL_DEFAULTS = {
    "Routine": "Anytime",
    "Lifestyle": "Moderate",
    "Sensitivities": "No",
    "CurrentSupplements": "None",
    "Experience": "Moderate",
}
# Never infer these from the bot's wording; its examples are not the user's answers
NO_BOT_SCAN = ("Sensitivities", "CurrentSupplements")

# Disclosure slots: the user's own words are kept unless the answer is a plain no or yes
NEGATIONS = ("no", "none", "nope", "nothing", "nah", "never")
DISCLOSURE_AFFIRMATIONS = ("yes", "yeah", "yep", "yup")
DISCLOSURE_FILLER = (
    "i", "i'm", "im", "do", "don't", "dont", "not", "have", "take", "taking",
    "any", "anything", "else", "other", "really", "at", "all", "just", "so", "far",
    "right", "now", "currently", "that", "of", "for", "me", "thanks", "thank", "you",
    "sensitivities", "allergies", "supplements", "meds", "medications",
)

_TOKEN_RE = re.compile(r"[a-z0-9']+")
_TRAILING_PUNCT_RE = re.compile(r"[\s!?.,]+$")
_QUOTE_CHARS = str.maketrans({"’": "'", "‘": "'"})


def _clean(text: str) -> str:
    """Lowercase, unify apostrophes, collapse whitespace and drop trailing punctuation."""
    text = (text or "").translate(_QUOTE_CHARS).lower()
    text = re.sub(r"\s+", " ", text).strip()
    return _TRAILING_PUNCT_RE.sub("", text)


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(_clean(text))


def _contains_run(tokens: Sequence[str], phrase_tokens: Sequence[str]) -> bool:
    size = len(phrase_tokens)
    if not size or size > len(tokens):
        return False
    return any(list(tokens[i:i + size]) == list(phrase_tokens) for i in range(len(tokens) - size + 1))


def contains_phrase(text: str, phrases: Sequence[str]) -> bool:
    tokens = tokenize(text)
    return any(_contains_run(tokens, tokenize(phrase)) for phrase in phrases)


def is_affirmation(utterance: str) -> bool:
    return _clean(utterance) in AFFIRMATIONS


def is_forbidden(utterance: str) -> bool:
    """True when the utterance is (or contains) a generic, non-committal phrase."""
    return contains_phrase(utterance, FORBIDDEN_PHRASES)


def _keyword_pattern(keyword: str) -> re.Pattern:
    if keyword.endswith("*"):
        return re.compile(r"(?<![a-z])" + re.escape(keyword[:-1]))
    return re.compile(r"(?<![a-z])" + re.escape(keyword) + r"(?:s|es)?(?![a-z])")


_PATTERN_CACHE: Dict[str, re.Pattern] = {}


def has_keyword(text: str, keyword: str) -> bool:
    pattern = _PATTERN_CACHE.get(keyword)
    if pattern is None:
        pattern = _PATTERN_CACHE[keyword] = _keyword_pattern(keyword)
    return bool(pattern.search(text.lower()))


def match_keywords(text: str, table: KeywordTable) -> Optional[str]:
    """First canonical value (in table order) with a keyword present in text."""
    if not text:
        return None
    for canonical, keywords in table:
        if any(has_keyword(text, kw) for kw in keywords):
            return canonical
    return None


_FLAVOR_RE = re.compile(
    r"(?<![a-z])(" + "|".join(re.escape(f) for f in sorted(FLAVOR_NAMES, key=len, reverse=True)) + r")(?![a-z])"
)


def find_flavors(text: str) -> List[str]:
    """Flavor names in order of appearance; longer names win over their parts."""
    found: List[str] = []
    for match in _FLAVOR_RE.finditer((text or "").lower()):
        name = match.group(1)
        if name not in found:
            found.append(name)
    return found


def title_case(name: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in name.split(" "))


def find_names(text: str, names: Sequence[str]) -> List[str]:
    lowered = (text or "").lower()
    hits = []
    for name in names:
        pattern = re.compile(r"(?<![a-z])" + re.escape(name.lower()) + r"(?![a-z])")
        match = pattern.search(lowered)
        if match:
            hits.append((match.start(), name))
    return [name for _, name in sorted(hits)]


# Patterns for pulling a suggested formula name out of the bot's message, in priority order
_NAME_PATTERNS = (
    re.compile(r'"([^"]+)"'),
    re.compile(r"“([^”]+)”"),
    re.compile(r"(?<!\w)'([^']+)'(?!\w)"),
    re.compile(r"how about\s+['\"]?([^?!.'\"]+)['\"]?[?!.]", re.IGNORECASE),
    re.compile(r"call it\s+['\"]?([^?!.'\"]+)['\"]?[?!.]", re.IGNORECASE),
    re.compile(r"(?:suggest|called|named)\s+(?:(?:a|an)\s+)?['\"]?([A-Z][A-Za-z]*(?:\s+[A-Z][A-Za-z]*)*)"),
)


def extract_formula_name(bot_text: str) -> Optional[str]:
    for pattern in _NAME_PATTERNS:
        match = pattern.search(bot_text or "")
        if not match:
            continue
        candidate = match.group(1).strip().strip("'\"").strip()
        if len(candidate) > 3:
            return candidate
    return None


@dataclass
class NormalizationContext:
    utterance: str
    slot: str
    bot_turn: Optional[DialogueTurn]
    rng: random.Random
    max_flavors: int
    original: str = field(init=False)
    bot_text: str = field(init=False)
    forbidden: bool = field(init=False)

    def __post_init__(self):
        self.original = (self.utterance or "").strip()
        self.bot_text = (self.bot_turn.text if self.bot_turn and self.bot_turn.text else "").strip()
        self.forbidden = is_forbidden(self.original)


Strategy = Callable[[NormalizationContext], Optional[str]]


# ---------------------------------------------------------------------------
# Slot-specific extraction from the user's own words
# ---------------------------------------------------------------------------

def _flavors_from_utterance(ctx: NormalizationContext) -> Optional[str]:
    user_flavors = find_flavors(ctx.original)
    if user_flavors:
        offered = set(find_flavors(ctx.bot_text))
        ordered = [f for f in user_flavors if f in offered] + [f for f in user_flavors if f not in offered]
        return ", ".join(title_case(f) for f in ordered[:ctx.max_flavors])
    if contains_phrase(ctx.original, SKIP_PHRASES):
        return "None"
    return None


def _sweetener_from_utterance(ctx: NormalizationContext) -> Optional[str]:
    named = find_names(ctx.original, SWEETENERS)
    if named:
        return named[0]
    if contains_phrase(ctx.original, SKIP_PHRASES):
        return "None"
    return None


def _dosage_from_utterance(ctx: NormalizationContext) -> Optional[str]:
    try:
        data = json.loads(ctx.original)
    except (json.JSONDecodeError, TypeError):
        return None
    return ctx.original if isinstance(data, dict) else None


_GENERIC_TOKENS = frozenset(
    token
    for phrase in FORBIDDEN_PHRASES + AFFIRMATIONS + NEGATIONS + DISCLOSURE_FILLER
    for token in tokenize(phrase)
)


def _disclosure_from_utterance(slot: str) -> Strategy:
    """
    Sensitivities and CurrentSupplements keep what the user disclosed.

    Any answer with content beyond generic words ("Yes, I'm allergic to soy",
    "I take metformin, nothing else") is stored as typed. Only an answer made of
    nothing but a negation and filler becomes the canonical "No"/"None", and a bare
    yes becomes "Yes".
    """
    negative = NEUTRAL_DEFAULTS[slot]
    table = SLOT_KEYWORDS.get(slot)

    def extract(ctx: NormalizationContext) -> Optional[str]:
        if table:
            found = match_keywords(ctx.original, table)
            if found:
                return found
        tokens = tokenize(ctx.original)
        if not tokens:
            return None
        if any(token not in _GENERIC_TOKENS for token in tokens):
            return ctx.original
        if any(token in NEGATIONS for token in tokens):
            return negative
        if tokens[0] in DISCLOSURE_AFFIRMATIONS:
            return "Yes"
        return None

    return extract


UTTERANCE_EXTRACTORS: Dict[str, Strategy] = {
    slot: (lambda ctx, table=table: match_keywords(ctx.original, table))
    for slot, table in SLOT_KEYWORDS.items()
}
UTTERANCE_EXTRACTORS.update({
    "Sensitivities": _disclosure_from_utterance("Sensitivities"),
    "CurrentSupplements": _disclosure_from_utterance("CurrentSupplements"),
    "Flavors": _flavors_from_utterance,
    "Sweetener": _sweetener_from_utterance,
    "Dosage": _dosage_from_utterance,
})


# ---------------------------------------------------------------------------
# Extraction from the previous bot message
# ---------------------------------------------------------------------------

def _goal_from_bot(ctx: NormalizationContext) -> str:
    return match_keywords(ctx.bot_text, SLOT_KEYWORDS["Goal"]) or ctx.rng.choice(GOAL_CANDIDATES)


def _format_from_bot(ctx: NormalizationContext) -> str:
    return match_keywords(ctx.bot_text, SLOT_KEYWORDS["Format"]) or "Stick Pack"


def _sweetener_from_bot(ctx: NormalizationContext) -> str:
    named = find_names(ctx.bot_text, SWEETENERS)
    return named[0] if named else DEFAULT_SWEETENER


def _flavors_from_bot(ctx: NormalizationContext) -> str:
    offered = find_flavors(ctx.bot_text)
    if offered:
        return ", ".join(title_case(f) for f in offered[:ctx.max_flavors])
    return DEFAULT_FLAVOR


def _dosage_from_bot(ctx: NormalizationContext) -> str:
    ingredients = ctx.bot_turn.ingredients if ctx.bot_turn else None
    return json.dumps({ing.name: ing.suggested for ing in ingredients or []})


def _name_from_bot(ctx: NormalizationContext) -> str:
    return extract_formula_name(ctx.bot_text) or DEFAULT_FORMULA_NAME


def _neutral_from_bot(slot: str) -> Strategy:
    def extract(ctx: NormalizationContext) -> str:
        if slot not in NO_BOT_SCAN:
            found = match_keywords(ctx.bot_text, SLOT_KEYWORDS[slot])
            if found:
                return found
        return NEUTRAL_DEFAULTS[slot]
    return extract


BOT_EXTRACTORS: Dict[str, Strategy] = {
    "Goal": _goal_from_bot,
    "Format": _format_from_bot,
    "Sweetener": _sweetener_from_bot,
    "Flavors": _flavors_from_bot,
    "Dosage": _dosage_from_bot,
    "FormulaName": _name_from_bot,
}
BOT_EXTRACTORS.update({slot: _neutral_from_bot(slot) for slot in NEUTRAL_DEFAULTS})


# ---------------------------------------------------------------------------
# The chain
# ---------------------------------------------------------------------------

def confirm_pending_value(ctx: NormalizationContext) -> Optional[str]:
    turn = ctx.bot_turn
    if turn and turn.pending_confirmation and turn.extracted_value and is_affirmation(ctx.original):
        return turn.extracted_value
    return None


def extract_from_utterance(ctx: NormalizationContext) -> Optional[str]:
    extractor = UTTERANCE_EXTRACTORS.get(ctx.slot)
    return extractor(ctx) if extractor else None


def pass_through_answer(ctx: NormalizationContext) -> Optional[str]:
    return None if ctx.forbidden else ctx.original


def pass_through_without_context(ctx: NormalizationContext) -> Optional[str]:
    return None if ctx.bot_text else ctx.original


def extract_from_bot_message(ctx: NormalizationContext) -> Optional[str]:
    extractor = BOT_EXTRACTORS.get(ctx.slot)
    return extractor(ctx) if extractor else None


DEFAULT_STRATEGIES: Tuple[Strategy, ...] = (
    confirm_pending_value,
    extract_from_utterance,
    pass_through_answer,
    pass_through_without_context,
    extract_from_bot_message,
)


class Normalizer:
    """Maps a raw answer for a slot to the value stored in the form."""

    def __init__(self, rng: Optional[random.Random] = None, max_flavors: int = MAX_FLAVORS,
                 strategies: Sequence[Strategy] = DEFAULT_STRATEGIES):
        self.rng = rng or random.Random()
        self.max_flavors = max_flavors
        self.strategies = tuple(strategies)

    def normalize(self, utterance: str, slot: str, previous_bot_turn: Optional[DialogueTurn] = None) -> str:
        ctx = NormalizationContext(
            utterance=utterance,
            slot=slot,
            bot_turn=previous_bot_turn,
            rng=self.rng,
            max_flavors=self.max_flavors,
        )
        for strategy in self.strategies:
            value = strategy(ctx)
            if value is not None:
                if value != ctx.original:
                    logger.info(f"Normalized {slot}: {ctx.original!r} -> {value!r} ({strategy.__name__})")
                return value
        return ctx.original


_default = Normalizer()


def normalize_value(utterance: str, slot: str, previous_bot_turn: Optional[DialogueTurn] = None) -> str:
    return _default.normalize(utterance, slot, previous_bot_turn)
