from unittest.mock import call

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from formulabot.errors import GenerationFormatError
from formulabot.models import BotReply, DialogueTurn, IngredientSpec
from formulabot.prompts import FormulaPrompts
from formulabot.slots import get_slot
from formulabot.workflow import force_component, parse_reply, strip_code_fences, validate_reply


def format_question_history(answer):
    return [
        DialogueTurn.bot(get_slot("Format").prompt, component="Format"),
        DialogueTurn.user(answer),
    ]


def system_text(messages):
    return "\n".join(m.content for m in messages if isinstance(m, SystemMessage))


class TestReplyParsing:
    """Model output is turned into a BotReply or rejected"""

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'

    def test_parse_fenced_reply(self):
        reply = parse_reply('```json\n{"text": "Nice!", "component": "Format", "inputType": "text", "options": ["Stick Pack"]}\n```')
        assert reply.component == "Format"
        assert reply.options == ["Stick Pack"]

    @pytest.mark.parametrize("raw", ["", "Sure! What format?", "[1, 2]", '{"text": "missing component"}'])
    def test_unusable_output(self, raw):
        with pytest.raises(GenerationFormatError):
            parse_reply(raw)

    def test_validate_reply_clamps_ingredients(self):
        reply = BotReply(
            text="Here you go",
            component="Dosage",
            ingredients=[IngredientSpec(name="Caffeine", min=50, max=200, suggested=350)],
        )
        validated, records = validate_reply(reply)

        assert validated.ingredients[0].suggested == 200
        assert records[0].name == "Caffeine"

    def test_force_component(self):
        reply = BotReply(text="It's 72°F and clear.", component="Routine", options=["Morning"], isComplete=True)
        forced = force_component(reply, "Format")

        assert forced.component == "Format"
        assert forced.text == f"It's 72°F and clear. {get_slot('Format').prompt}"
        assert forced.options is None
        assert forced.is_complete is False

    def test_force_component_keeps_matching_reply(self):
        reply = BotReply(text="Stick Packs, Capsules, or Pods?", component="Format")
        assert force_component(reply, "Format") is reply
        assert force_component(reply, None) is reply


class TestWorkflow:
    def test_workflow_initialization(self, workflow, llm):
        assert workflow.workflow is not None
        assert workflow.prompts is not None
        llm.bind_tools.assert_called_once()
        assert llm.bind.call_args == call(response_format={"type": "json_object"})

    def test_should_use_tools(self, workflow):
        tool_call = AIMessage(content="", tool_calls=[{"name": "get_weather", "args": {}, "id": "call_1"}])
        assert workflow.should_use_tools({"messages": [tool_call]}) == "tools"
        assert workflow.should_use_tools({"messages": [AIMessage(content="{}")]}) == "parse"

    def test_should_retry_parse(self, workflow):
        assert workflow.should_retry_parse({"reply": BotReply(text="x", component="Goal")}) == "done"
        assert workflow.should_retry_parse({"reply": None, "format_attempts": 0}) == "reformat"
        assert workflow.should_retry_parse({"reply": None, "format_attempts": 1}) == "fallback"

    @pytest.mark.asyncio
    async def test_regular_turn(self, workflow, llm, reply_message):
        llm.bind_tools.return_value.ainvoke.return_value = reply_message(
            text="Nice! Do you want Stick Packs, Capsules, or Pods?", component="Format"
        )

        result = await workflow.run(
            {}, [DialogueTurn.user("I'm always tired")], pending_slot="Goal", answer={"Goal": "Energy"}
        )

        assert result.reply.component == "Format"
        assert result.detoured is False
        assert result.used_fallback is False
        # The tentative answer is part of the prompt
        prompt = llm.bind_tools.return_value.ainvoke.call_args[0][0]
        assert "Goal: Energy" in system_text(prompt)
        assert isinstance(prompt[-1], HumanMessage)
        llm.bind.return_value.ainvoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_dosages_are_clamped(self, workflow, llm, reply_message):
        llm.bind_tools.return_value.ainvoke.return_value = reply_message(
            text="Here are your ingredients!",
            component="Dosage",
            inputType="ingredient_sliders",
            ingredients=[{"name": "Caffeine", "min": 50, "max": 200, "suggested": 350, "unit": "mg"}],
        )

        result = await workflow.run({"Goal": "Energy"}, [], pending_slot="Experience", answer={"Experience": "Beginner"})

        assert result.reply.ingredients[0].suggested == 200
        assert [c.name for c in result.clamps] == ["Caffeine"]

    @pytest.mark.asyncio
    async def test_reformat_then_success(self, workflow, llm, reply_message):
        llm.bind_tools.return_value.ainvoke.return_value = AIMessage(content="Awesome! Stick Packs, Capsules, or Pods?")
        llm.bind.return_value.ainvoke.return_value = reply_message(
            text="Awesome! Stick Packs, Capsules, or Pods?", component="Format"
        )

        result = await workflow.run({}, [DialogueTurn.user("energy")], pending_slot="Goal", answer={"Goal": "Energy"})

        assert result.reply.component == "Format"
        assert result.used_fallback is False
        request = llm.bind.return_value.ainvoke.call_args[0][0]
        assert request[-1].content == FormulaPrompts.REFORMAT_INSTRUCTION

    @pytest.mark.asyncio
    async def test_second_format_failure_falls_back(self, workflow, llm):
        llm.bind_tools.return_value.ainvoke.return_value = AIMessage(content="Cool, what format?")
        llm.bind.return_value.ainvoke.return_value = AIMessage(content="Still not JSON")

        result = await workflow.run({}, [DialogueTurn.user("energy")], pending_slot="Goal", answer={"Goal": "Energy"})

        assert result.used_fallback is True
        assert result.reply.component == "Format"
        assert result.reply.text == get_slot("Format").prompt
        assert llm.bind.return_value.ainvoke.call_count == 1

    @pytest.mark.asyncio
    async def test_format_failure_on_last_answer_completes(self, workflow, llm):
        """Naming the formula fills the form, so the fallback finishes instead of starting over."""
        form = {
            "Goal": "Energy", "Format": "Stick Pack", "Routine": "Morning", "Lifestyle": "Active",
            "Sensitivities": "No", "CurrentSupplements": "None", "Experience": "Beginner",
            "Dosage": '{"Caffeine": 120}', "Sweetener": "Stevia", "Flavors": "Mango",
        }
        llm.bind_tools.return_value.ainvoke.return_value = AIMessage(content="Love the name!")
        llm.bind.return_value.ainvoke.return_value = AIMessage(content="Really love it!")

        result = await workflow.run(
            form,
            [DialogueTurn.bot(get_slot("FormulaName").prompt, component="FormulaName"),
             DialogueTurn.user("Morning Spark")],
            pending_slot="FormulaName",
            answer={"FormulaName": "Morning Spark"},
        )

        assert result.used_fallback is True
        assert result.reply.is_complete is True
        assert result.reply.component != "Goal"
        assert result.reply.formula_summary.formula_name == "Morning Spark"
        assert result.reply.formula_summary.delivery_format == "Stick Pack"

    @pytest.mark.asyncio
    async def test_tool_detour_resumes_pending_slot(self, workflow, llm, reply_message):
        llm.bind_tools.return_value.ainvoke.return_value = AIMessage(
            content="",
            tool_calls=[{"name": "calculate", "args": {"expression": "25 * 4"}, "id": "call_1"}],
        )
        # The model tries to move on; the reply is steered back to Format
        llm.bind.return_value.ainvoke.return_value = reply_message(text="25 * 4 is 100!", component="Routine")

        result = await workflow.run(
            {"Goal": "Energy"},
            format_question_history("what's 25 * 4?"),
            pending_slot="Format",
            answer={"Format": "what's 25 * 4?"},
        )

        assert result.detoured is True
        assert result.resume_target == "Format"
        assert result.reply.component == "Format"
        assert result.reply.text == f"25 * 4 is 100! {get_slot('Format').prompt}"

        resume_prompt = llm.bind.return_value.ainvoke.call_args[0][0]
        assert 'continue asking about "Format"' in resume_prompt[1].content
        assert any(isinstance(m, ToolMessage) and m.content == "25 * 4 = 100" for m in resume_prompt)
        assert "what's 25 * 4?" not in system_text(resume_prompt)

    @pytest.mark.asyncio
    async def test_detour_fallback_asks_pending_slot(self, workflow, llm):
        llm.bind_tools.return_value.ainvoke.return_value = AIMessage(
            content="",
            tool_calls=[{"name": "get_current_date", "args": {}, "id": "call_1"}],
        )
        llm.bind.return_value.ainvoke.side_effect = [
            AIMessage(content="It's Monday!"),
            AIMessage(content="Still Monday!"),
        ]

        result = await workflow.run(
            {"Goal": "Energy"},
            format_question_history("what day is it?"),
            pending_slot="Format",
            answer={"Format": "what day is it?"},
        )

        assert result.detoured is True
        assert result.used_fallback is True
        assert result.reply.component == "Format"
        assert result.reply.text == get_slot("Format").prompt
