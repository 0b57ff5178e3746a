from unittest.mock import MagicMock, patch

import requests

from formulabot.checkout import CheckoutGateway, build_checkout_payload, chosen_ingredients

FORM = {
    "Goal": "Energy",
    "Format": "Stick Pack",
    "Dosage": '{"Caffeine": 150}',
    "Flavors": ["Mango", "Lime"],
    "FormulaName": "Morning Spark",
}


class TestCheckoutPayload:
    def test_confirmed_dosages_win(self, caffeine, theanine):
        chosen = chosen_ingredients(FORM, [caffeine, theanine])
        assert [(i["name"], i["dosage"]) for i in chosen] == [("Caffeine", 150), ("L-Theanine", 200)]

    def test_payload(self, caffeine):
        payload = build_checkout_payload(FORM, [caffeine], "s1")

        assert payload["formulaName"] == "Morning Spark"
        assert payload["format"] == "Stick Pack"
        assert payload["flavors"] == "Mango, Lime"
        assert payload["sweetener"] is None
        assert payload["sessionId"] == "s1"

    def test_defaults(self):
        payload = build_checkout_payload({}, [], "s1")
        assert payload["formulaName"] == "Custom Formula"
        assert payload["format"] == "Stick Pack"


class TestCheckoutGateway:
    """Checkout creation against the shop endpoint"""

    def test_not_configured(self):
        result = CheckoutGateway(endpoint=None).create_checkout({})
        assert result.success is False

    @patch("formulabot.checkout.requests.post")
    def test_success(self, mock_post):
        mock_response = MagicMock()
        mock_response.ok = True
        mock_response.json.return_value = {"success": True, "checkoutUrl": "https://shop.example.com/c/1", "price": 39.99}
        mock_post.return_value = mock_response

        result = CheckoutGateway(endpoint="https://shop.example.com/api/checkout").create_checkout({"formulaName": "X"})

        assert result.success is True
        assert result.url == "https://shop.example.com/c/1"
        assert result.price == "39.99"
        assert mock_post.call_args[1]["json"] == {"formulaName": "X"}

    @patch("formulabot.checkout.requests.post")
    def test_error_response(self, mock_post):
        mock_response = MagicMock()
        mock_response.ok = False
        mock_response.status_code = 500
        mock_response.json.return_value = {"success": False, "error": "Product sync failed"}
        mock_post.return_value = mock_response

        result = CheckoutGateway(endpoint="https://shop.example.com/api/checkout").create_checkout({})

        assert result.success is False
        assert result.error == "Product sync failed"

    @patch("formulabot.checkout.requests.post")
    def test_network_error(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")
        result = CheckoutGateway(endpoint="https://shop.example.com/api/checkout").create_checkout({})
        assert result.success is False
