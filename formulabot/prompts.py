import json
from typing import List, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from .models import DialogueTurn, FormState
from .slots import SLOT_ORDER, missing_slots


class FormulaPrompts:
    """Collection of prompts for the supplement formula assistant"""

    IDENTITY = "Formula AI Assistant - AI-powered supplement consultant. Mission: build personalized supplement formulas through friendly conversation."

    FLOW = (
        "**FLOW:** Goal → Format → Routine → Lifestyle → Sensitivities → CurrentSupplements → Experience → "
        "Dosage → [Stick Pack only: Sweetener → Flavors] → FormulaName → Complete"
    )

    FUNCTION_CALLING_RULES = """
**FUNCTION CALLING - OFF-TOPIC QUESTIONS:**
You have tools to answer off-topic questions:
- get_current_time → "what time is it?"
- get_current_date → "what's the date?"
- get_weather(location) → "what's the weather?"
- calculate(expression) → "what's 25 * 4?"
- search_web(query) → news, facts, general knowledge questions

When the user asks something off-topic:
1. Call the tool to get the information
2. For search_web: include the full search results in your reply
3. For the others: answer in 1 sentence
4. Then return to the SAME component (never advance prematurely)

**GREETINGS:** "hi"/"hello" = acknowledge briefly and re-ask the SAME question (do not call tools for greetings)
"""

    TONE_AND_STYLE = """
**TONE:** Bold, friendly, playful - like chatting with a friend
- Use language like "Let's go!", "Nice!", "Boom!", "Sweet!"
- Emojis naturally (1-2 per message), never as bullet points
- Keep it SHORT and punchy - max 1-2 sentences
- NON-MEDICAL ONLY - you mix potions, not prescriptions!
- ALWAYS integrate options into natural sentences ("Do you want Stick Packs, Capsules, or Pods?"), never line-broken lists
"""

    DOSAGE_RULES = """
**DOSAGE:** Personalize the "suggested" value inside each ingredient's range:
Beginner/Sedentary 40-60% | Moderate/Active 60-80% | Experienced/Athlete 80-100% | Caffeine-sensitive 30-50% for stimulants
"""

    SAFETY_WARNINGS = """
**SAFETY:** Warn when exceeding Caffeine 300mg, Taurine 2000mg, Zinc 40mg, Vitamin D3 4000IU, Melatonin 5mg, Protein 50g, Fiber 15g.
- Add a short safety note for known contraindications (stimulants + hypertension, adaptogens + certain meds)
- Use stated allergies or medications to exclude or flag ingredients
- Never give prescriptive medical advice; decline illegal or unsafe substances and suggest safe alternatives
"""

    FORMAT_CONSTRAINTS = """
**FORMAT CONSTRAINTS:**
- Stick Pack = single-serve powder; mind total powder weight and solubility. Max 2 flavors. Natural sweeteners only.
- Pod = concentrated liquid or soluble puck; NO flavors.
- Capsule = dry fill; realistic per-capsule mass (≤800mg typical). Say so if a serving needs several capsules.
"""

    FLOW_DETAILS = """
**CONVERSATION FLOW DETAILS:**
1-7. Collect Goal, Format, Routine, Lifestyle, Sensitivities, CurrentSupplements and Experience through natural conversation.
8. After Experience, present 3-6 relevant ingredients with personalized dosages. You MUST use inputType "ingredient_sliders",
   component "Dosage" and include the ingredients array [{"name", "min", "max", "suggested", "unit", "rationale"}].
   If "Dosage" was already asked about, never generate the formula again.
9. The user confirms dosages by sending a JSON object like {"L-Theanine": 100, "Caffeine": 200}. Then check the Format:
   Stick Pack → Sweetener, then Flavors. Capsule or Pod → skip to FormulaName.
10. SWEETENER (Stick Pack only): offer the available sweeteners in one message. "skip"/"none" → no sweetener. Asked for a pick → recommend one.
11. FLAVORS (Stick Pack only): offer the available flavors, max 2, or skip. Asked for a pick → recommend 2 complementary flavors.
12. FORMULA NAME: ask for THEIR name first. If they don't know, suggest one based on Goal + Routine, in double quotes.
13. Summarize with celebration: isComplete true, formulaSummary with ingredients, formulaName and deliveryFormat.
"""

    HANDLING_CONFUSION = """
**CONFUSION:** Gibberish or unrelated answers are NOT answers. Stay on the same component and re-ask playfully.
"idk what those are" → explain the options, then re-ask. Be a helpful friend, not a questionnaire.
"""

    OUT_OF_STOCK_HANDLING = """
**OUT OF STOCK:** When a flavor or ingredient is unavailable, apologize warmly, suggest 2-3 in-stock alternatives and ask which they prefer.
"""

    JSON_FIELDS = (
        "text (string), inputType (string), component (string), options (array or null), "
        "sliderConfig (object or null), ingredients (array or null), isComplete (boolean), "
        "formulaSummary (object or null)"
    )

    JSON_OUTPUT_FORMAT = """
**REQUIRED JSON OUTPUT FORMAT:**
{
  "text": "Your conversational message to the user",
  "inputType": "text" | "options" | "multiselect" | "slider" | "ingredient_sliders",
  "component": "Goal" | "Format" | "Routine" | ...,
  "options": ["option1", "option2"] or null,
  "sliderConfig": {"min", "max", "step", "unit", "defaultValue"} or null,
  "ingredients": [{"name", "min", "max", "suggested", "unit", "rationale"}] or null,
  "isComplete": true | false,
  "formulaSummary": {"ingredients", "formulaName", "deliveryFormat", "safetyNote"} or null
}

**CRITICAL:** When not calling tools you MUST respond with valid JSON only. No text outside the JSON object.
"""

    REFORMAT_INSTRUCTION = (
        "Please reformat your last response as a valid JSON object with these exact fields: "
        + JSON_FIELDS
        + ". Keep the same meaning and content, just change the format to JSON."
    )

    def system_instruction(self, ingredients_prompt: str) -> str:
        return "\n".join([
            self.IDENTITY,
            "",
            self.FLOW,
            self.FUNCTION_CALLING_RULES,
            self.TONE_AND_STYLE,
            "**INGREDIENTS:**",
            ingredients_prompt,
            self.DOSAGE_RULES,
            self.SAFETY_WARNINGS,
            self.FORMAT_CONSTRAINTS,
            self.FLOW_DETAILS,
            self.HANDLING_CONFUSION,
            self.OUT_OF_STOCK_HANDLING,
            self.JSON_OUTPUT_FORMAT,
        ])

    def inventory_context(self, summary: str, flavor_list: str, sweetener_list: str, max_flavors: int) -> str:
        return f"""**CURRENT INVENTORY STATUS:**
{summary}

**AVAILABLE SWEETENERS (Stick Packs only):**
{sweetener_list or "Stevia, Monk Fruit, Allulose, Erythritol"}

**AVAILABLE FLAVORS (Stick Packs only, max {max_flavors}):**
{flavor_list or "No flavors in stock right now - offer to skip flavors"}

Only suggest flavors from this list."""

    def build_persona_summary(self, form: FormState) -> str:
        """Translate the collected profile into dosage guidance for the model."""
        if not form:
            return ""

        parts = ["**USER PERSONA SUMMARY FOR DOSAGE CALCULATION:**"]

        exp = str(form.get("Experience") or "").lower()
        if not exp:
            parts.append("- Experience: UNKNOWN (assume moderate) → Use 60-70% of dosage range")
        elif any(word in exp for word in ("beginner", "new", "never")):
            parts.append("- Experience: BEGINNER → Use 40-60% of dosage range")
        elif any(word in exp for word in ("experienced", "advanced", "years")):
            parts.append("- Experience: ADVANCED → Use 80-100% of dosage range")
        else:
            parts.append("- Experience: MODERATE → Use 60-80% of dosage range")

        if form.get("Lifestyle") or form.get("Routine"):
            activity = f"{form.get('Lifestyle') or ''} {form.get('Routine') or ''}".lower()
            if any(word in activity for word in ("athlete", "gym", "workout", "active", "exercise")):
                parts.append("- Activity: HIGH → Increase dosages within experience range")
            elif any(word in activity for word in ("sedentary", "desk", "office")):
                parts.append("- Activity: LOW → Decrease dosages within experience range")
            else:
                parts.append("- Activity: MODERATE → Standard dosages within experience range")

        sens = str(form.get("Sensitivities") or "").lower()
        if sens:
            if "caffeine" in sens or "stimulant" in sens:
                parts.append("- ALERT: Caffeine/stimulant sensitivity → Reduce stimulants to 30-50% of range")
            if any(word in sens for word in ("anxiety", "sleep", "jitter")):
                parts.append("- ALERT: Anxiety/sleep concerns → Significantly reduce stimulants")
            if sens not in ("none", "no"):
                parts.append("- Sensitivities present → Use conservative dosages (40-60% of range)")

        current = str(form.get("CurrentSupplements") or "").lower()
        if current and current not in ("none", "no"):
            parts.append("- Taking other supplements/meds → Be conservative with dosages")

        goal = str(form.get("Goal") or "").lower()
        if any(word in goal for word in ("energy", "focus", "performance")):
            parts.append("- Goal needs strong support → Use higher end within safety limits")
        elif any(word in goal for word in ("relax", "sleep", "calm")):
            parts.append("- Goal is relaxation → Use moderate dosages")

        parts.append('\n**YOU MUST use this persona summary to calculate personalized "suggested" dosages for each ingredient.**')
        return "\n".join(parts)

    def collected_context(self, form: FormState) -> Optional[str]:
        if not form:
            return None
        collected = ", ".join(
            f"{key}: {json.dumps(value) if isinstance(value, list) else value}"
            for key, value in form.items()
        )
        asked = ", ".join(k for k in SLOT_ORDER if k in form)
        remaining = ", ".join(missing_slots(form, skip_inapplicable=True)) or "none, the formula is complete"
        return (
            f"Information already collected:\n{collected}\n\n"
            f"Components already asked about: {asked}\n\n"
            "DO NOT ask about these components again. Move to the next step in the conversation flow.\n"
            f"Components still to collect, in order: {remaining}\n\n"
            f"{self.build_persona_summary(form)}"
        )

    def format_history(self, history: Sequence[DialogueTurn]) -> List[BaseMessage]:
        """Replay the dialogue; bot turns carry the component they asked about."""
        messages: List[BaseMessage] = []
        for turn in history:
            if turn.sender == "user":
                messages.append(HumanMessage(content=turn.text))
            elif turn.component:
                messages.append(AIMessage(content=f"[Asked about: {turn.component}] {turn.text}"))
            else:
                messages.append(AIMessage(content=turn.text))
        return messages

    def resume_message(self, instructions: str) -> str:
        return f"""You must respond in valid JSON format with these fields: {self.JSON_FIELDS}.

{instructions}

IMPORTANT: If you used search_web, include the FULL search results in your response so the user sees actual information. For other tools (time, weather, math), answer briefly (1 sentence). Then immediately continue with the component specified above."""

    def build_messages(self, form: FormState, history: Sequence[DialogueTurn], ingredients_prompt: str,
                       inventory_context: str) -> List[BaseMessage]:
        messages: List[BaseMessage] = [
            SystemMessage(content=self.system_instruction(ingredients_prompt)),
            SystemMessage(content=inventory_context),
        ]
        collected = self.collected_context(form)
        if collected:
            messages.append(SystemMessage(content=collected))
        messages.extend(self.format_history(history))
        return messages
