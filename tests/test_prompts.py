from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from formulabot.models import DialogueTurn
from formulabot.prompts import FormulaPrompts


class TestFormulaPrompts:
    """Prompt assembly for the formula assistant"""

    def setup_method(self):
        self.prompts = FormulaPrompts()

    def test_system_instruction_contains_catalog(self):
        instruction = self.prompts.system_instruction("Energy Blend: Caffeine 50-200mg")

        assert "Energy Blend: Caffeine 50-200mg" in instruction
        assert self.prompts.FLOW in instruction
        assert "valid JSON" in instruction

    def test_inventory_context(self):
        context = self.prompts.inventory_context("Inventory: 1 flavors", "Mango", "", 2)

        assert "max 2" in context
        assert "Mango" in context
        assert "Stevia, Monk Fruit, Allulose, Erythritol" in context

    def test_messages_for_new_conversation(self):
        messages = self.prompts.build_messages({}, [], "ING", "INV")

        assert len(messages) == 2
        assert all(isinstance(m, SystemMessage) for m in messages)
        assert messages[1].content == "INV"

    def test_collected_context(self):
        form = {"Goal": "Energy", "Flavors": ["Mango", "Lime"]}
        messages = self.prompts.build_messages(form, [], "ING", "INV")

        collected = messages[2].content
        assert "Goal: Energy" in collected
        assert 'Flavors: ["Mango", "Lime"]' in collected
        assert "Components already asked about: Goal, Flavors" in collected
        assert "Components still to collect, in order: Format, Routine, Lifestyle," in collected
        assert "Sweetener, FormulaName\n" in collected

    def test_collected_context_skips_stick_pack_slots(self):
        form = {"Goal": "Focus", "Format": "Capsule"}
        collected = self.prompts.collected_context(form)

        remaining = collected.split("Components still to collect, in order: ")[1].split("\n")[0]
        assert remaining == "Routine, Lifestyle, Sensitivities, CurrentSupplements, Experience, Dosage, FormulaName"

    def test_history_carries_component(self):
        history = [
            DialogueTurn.bot("Stick Packs, Capsules, or Pods?", component="Format"),
            DialogueTurn.user("pods"),
            DialogueTurn.bot("Welcome back!"),
        ]
        messages = self.prompts.format_history(history)

        assert isinstance(messages[0], AIMessage)
        assert messages[0].content == "[Asked about: Format] Stick Packs, Capsules, or Pods?"
        assert isinstance(messages[1], HumanMessage)
        assert messages[2].content == "Welcome back!"

    def test_persona_for_beginner_with_caffeine_sensitivity(self):
        summary = self.prompts.build_persona_summary({
            "Goal": "Energy",
            "Experience": "Beginner",
            "Sensitivities": "Caffeine sensitive",
            "Lifestyle": "Sedentary",
        })

        assert "BEGINNER" in summary
        assert "Caffeine/stimulant sensitivity" in summary
        assert "Activity: LOW" in summary
        assert "Goal needs strong support" in summary

    def test_persona_for_empty_form(self):
        assert self.prompts.build_persona_summary({}) == ""

    def test_reformat_and_resume_name_every_field(self):
        assert self.prompts.JSON_FIELDS in self.prompts.REFORMAT_INSTRUCTION
        resume = self.prompts.resume_message("CRITICAL: keep asking Format")
        assert "CRITICAL: keep asking Format" in resume
        assert self.prompts.JSON_FIELDS in resume
