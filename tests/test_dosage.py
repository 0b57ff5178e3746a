import logging

from formulabot.dosage import ClampRecord, clamp, validate_ingredient_dosages, validate_summary
from formulabot.models import FormulaSummary, IngredientSpec


class TestDosageValidation:
    """Suggested dosages are pulled back into their range"""

    def test_clamp(self):
        assert clamp(350, 50, 200) == 200
        assert clamp(10, 50, 200) == 50
        assert clamp(120, 50, 200) == 120

    def test_over_max_is_clamped_and_logged(self, caplog):
        ingredient = IngredientSpec(name="Caffeine", min=50, max=200, suggested=350, unit="mg")

        with caplog.at_level(logging.WARNING, logger="formulabot.dosage"):
            validated, records = validate_ingredient_dosages([ingredient])

        assert validated[0].suggested == 200
        assert records == [ClampRecord(name="Caffeine", original=350, clamped=200, min=50, max=200, unit="mg")]
        assert "Dosage clamped for Caffeine: 350.0 → 200.0 (range: 50.0-200.0)" in caplog.text

    def test_under_min_is_clamped(self):
        ingredient = IngredientSpec(name="L-Theanine", min=100, max=400, suggested=20)
        validated, records = validate_ingredient_dosages([ingredient])

        assert validated[0].suggested == 100
        assert records[0].original == 20

    def test_in_range_passes_untouched(self, caffeine, caplog):
        with caplog.at_level(logging.WARNING):
            validated, records = validate_ingredient_dosages([caffeine])

        assert validated[0] is caffeine
        assert records == []
        assert "Dosage clamped" not in caplog.text

    def test_inverted_range_is_swapped(self):
        ingredient = IngredientSpec(name="Taurine", min=1000, max=500, suggested=2000)
        validated, records = validate_ingredient_dosages([ingredient])

        assert (validated[0].min, validated[0].max, validated[0].suggested) == (500, 1000, 1000)
        assert records[0].max == 1000

    def test_original_is_not_mutated(self):
        ingredient = IngredientSpec(name="Caffeine", min=50, max=200, suggested=350)
        validate_ingredient_dosages([ingredient])
        assert ingredient.suggested == 350

    def test_none_and_empty(self):
        assert validate_ingredient_dosages(None) == ([], [])
        assert validate_ingredient_dosages([]) == ([], [])

    def test_summary(self):
        summary = FormulaSummary(
            ingredients=[IngredientSpec(name="Caffeine", min=50, max=200, suggested=300)],
            formulaName="Morning Spark",
        )
        validated, records = validate_summary(summary)

        assert validated.ingredients[0].suggested == 200
        assert validated.formula_name == "Morning Spark"
        assert len(records) == 1

    def test_summary_without_ingredients(self):
        assert validate_summary(None) == (None, [])
        summary = FormulaSummary(formulaName="Empty")
        assert validate_summary(summary) == (summary, [])
