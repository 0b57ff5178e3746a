import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from formulabot.bots.base_bot import ERROR_MESSAGE, BaseBot, parse_dosage_reply, render_turn
from formulabot.models import BotReply, DialogueTurn, FormulaSummary
from formulabot.session import SessionManager
from formulabot.slots import get_slot
from formulabot.workflow import WorkflowResult


class FakeBot(BaseBot):
    def __init__(self, sessions):
        super().__init__(sessions)
        self.sent = []
        self.typing = []

    async def send_message(self, recipient, message, **kwargs):
        self.sent.append((recipient, message))
        return True

    async def send_typing_action(self, recipient):
        self.typing.append(recipient)
        return True

    def format_recipient_id(self, raw_id):
        return str(raw_id)


@pytest.fixture
def workflow_double():
    double = MagicMock()
    double.run = AsyncMock(return_value=WorkflowResult(
        reply=BotReply(text=get_slot("Format").prompt, component="Format", options=["Stick Pack", "Capsule", "Pod"])
    ))
    double.inventory.unavailable_flavors.return_value = []
    return double


@pytest.fixture
def bot(workflow_double, memory, repository, checkout):
    return FakeBot(SessionManager(workflow=workflow_double, memory=memory, repository=repository, checkout=checkout))


class TestRendering:
    """Bot turns rendered as plain chat text"""

    def test_options(self):
        turn = DialogueTurn.bot("Pick one", component="Format", options=["Stick Pack", "Pod"])
        assert render_turn(turn) == "Pick one\n\nOptions: Stick Pack, Pod"

    def test_ingredients(self, caffeine):
        turn = DialogueTurn.bot("Adjust these", component="Dosage", ingredients=[caffeine])
        text = render_turn(turn)

        assert "• Caffeine: 120 mg (range 50-200)" in text
        assert 'Reply "ok" to keep these' in text

    def test_summary(self, caffeine):
        summary = FormulaSummary(ingredients=[caffeine], formulaName="Morning Spark", deliveryFormat="Stick Pack",
                                 flavors="Mango", sweetener="None", redirectUrl="https://shop.example.com/c/1")
        text = render_turn(DialogueTurn.bot("Done!", is_complete=True, formula_summary=summary))

        assert "🧪 Morning Spark (Stick Pack)" in text
        assert "Flavors: Mango" in text
        assert "Sweetener" not in text
        assert "Checkout: https://shop.example.com/c/1" in text


class TestParseDosageReply:
    def test_overrides_are_clamped(self, caffeine, theanine):
        value = parse_dosage_reply("caffeine 500 please, L-Theanine: 150mg", [caffeine, theanine])
        assert json.loads(value) == {"Caffeine": 200, "L-Theanine": 150}

    def test_untouched_ingredients_keep_suggestion(self, caffeine, theanine):
        value = parse_dosage_reply("Caffeine 80", [caffeine, theanine])
        assert json.loads(value) == {"Caffeine": 80, "L-Theanine": 200}

    def test_no_numbers(self, caffeine):
        assert parse_dosage_reply("looks good", [caffeine]) is None


class TestBaseBot:
    @pytest.mark.asyncio
    async def test_start_conversation(self, bot):
        await bot.start_conversation(42, "Ada")
        assert bot.sent == [("42", get_slot("Goal").prompt)]

    @pytest.mark.asyncio
    async def test_process_user_message(self, bot, workflow_double):
        await bot.process_user_message("42", "I'm always tired", "Ada")

        assert bot.typing == ["42"]
        recipient, text = bot.sent[-1]
        assert recipient == "42"
        assert "Options: Stick Pack, Capsule, Pod" in text
        assert workflow_double.run.call_args[1]["answer"] == {"Goal": "Energy"}

    @pytest.mark.asyncio
    async def test_dosage_message_becomes_map(self, bot, workflow_double, memory, caffeine):
        context = await memory.get_conversation("42")
        context.form = {"Goal": "Energy"}
        context.ingredients = [caffeine]
        context.add_turn(DialogueTurn.bot(get_slot("Dosage").prompt, component="Dosage", ingredients=[caffeine]))

        await bot.process_user_message("42", "Caffeine 90", "Ada")

        assert workflow_double.run.call_args[1]["answer"] == {"Dosage": json.dumps({"Caffeine": 90.0})}

    @pytest.mark.asyncio
    async def test_unexpected_error_sends_apology(self, bot, workflow_double):
        workflow_double.run.side_effect = RuntimeError("graph exploded")

        await bot.process_user_message("42", "energy")

        assert bot.sent[-1] == ("42", ERROR_MESSAGE)

    @pytest.mark.asyncio
    async def test_reset_conversation(self, bot, memory):
        await bot.process_user_message("42", "energy")
        await bot.reset_conversation("42")

        assert (await memory.get_conversation("42")).form == {}
        assert bot.sent[-1][1] == get_slot("Goal").prompt
