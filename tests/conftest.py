import json
import random
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage

from formulabot.checkout import CheckoutGateway
from formulabot.cooldown import CooldownGate
from formulabot.memory import MemoryManager
from formulabot.models import CheckoutResult, IngredientSpec
from formulabot.normalizer import Normalizer
from formulabot.repository import FormulaRepository
from formulabot.session import FormulaSession
from formulabot.workflow import Workflow


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def caffeine():
    return IngredientSpec(name="Caffeine", min=50, max=200, suggested=120, unit="mg",
                          rationale="Clean energy")


@pytest.fixture
def theanine():
    return IngredientSpec(name="L-Theanine", min=100, max=400, suggested=200, unit="mg",
                          rationale="Smooths out the caffeine")


@pytest.fixture
def reply_message():
    """Build the AIMessage a model returns for a JSON bot reply."""
    def build(**fields) -> AIMessage:
        fields.setdefault("inputType", "text")
        return AIMessage(content=json.dumps(fields))
    return build


@pytest.fixture
def llm():
    """Chat model double; tool-enabled and JSON-mode calls are separate AsyncMocks."""
    mock_llm = MagicMock()
    mock_llm.bind_tools.return_value.ainvoke = AsyncMock()
    mock_llm.bind.return_value.ainvoke = AsyncMock()
    return mock_llm


@pytest.fixture
def inventory():
    mock_inventory = MagicMock()
    mock_inventory.ingredients_prompt.return_value = "Energy Blend: Caffeine 50-200mg, L-Theanine 100-400mg"
    mock_inventory.inventory_summary.return_value = "Inventory: 2 flavors, 2 ingredients, 1 sweeteners in stock."
    mock_inventory.flavor_list_prompt.return_value = "Mango, Watermelon"
    mock_inventory.sweetener_list_prompt.return_value = "Stevia"
    mock_inventory.max_flavors = 2
    return mock_inventory


@pytest.fixture
def workflow(llm, inventory):
    return Workflow(llm=llm, inventory=inventory)


@pytest.fixture
def supabase_client():
    client = MagicMock()
    # No stored conversation unless a test says otherwise
    client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value.data = []
    client.table.return_value.upsert.return_value.execute.return_value.data = [{"session_id": "s1"}]
    return client


@pytest.fixture
def memory(supabase_client):
    return MemoryManager(client=supabase_client)


@pytest.fixture
def repository():
    mock_repository = MagicMock(spec=FormulaRepository)
    mock_repository.get_formulas_by_customer.return_value = []
    mock_repository.check_name_availability.return_value = {"available": True}
    return mock_repository


@pytest.fixture
def checkout():
    gateway = MagicMock(spec=CheckoutGateway)
    gateway.create_checkout.return_value = CheckoutResult(success=True, url="https://shop.example.com/checkout/abc")
    return gateway


@pytest.fixture
def make_session(memory, repository, checkout):
    def build(workflow, cooldown=None, customer_id=None, customer_name=None) -> FormulaSession:
        return FormulaSession(
            "s1",
            workflow=workflow,
            memory=memory,
            repository=repository,
            checkout=checkout,
            normalizer=Normalizer(rng=random.Random(7)),
            cooldown=cooldown or CooldownGate(interval=0),
            customer_id=customer_id,
            customer_name=customer_name,
        )
    return build
