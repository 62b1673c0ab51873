from services.payment_result_service.redirect_params import parse_redirect_params, parse_return_url


class TestParseRedirectParams:
    """Test suite for return URL parameter parsing."""

    def test_gateway_parameters(self):
        """Test that gateway-native parameters are picked up."""
        params = parse_redirect_params({"transaction_uid": "tok_1", "page_request_uid": "abc"})
        assert params.confirmation_token == "tok_1"
        assert params.page_request_id == "abc"
        assert params.raw_status is None
        assert params.order_id is None

    def test_legacy_parameters(self):
        """Test the legacy status/order/type/free family."""
        params = parse_redirect_params({
            "status": "success",
            "order": "pur_123",
            "type": "game",
            "free": "true",
        })
        assert params.raw_status == "success"
        assert params.order_id == "pur_123"
        assert params.item_type_hint == "game"
        assert params.is_free is True

    def test_defaults_when_absent(self):
        """Test that missing parameters fall back to defaults."""
        params = parse_redirect_params({})
        assert params.item_type_hint == "product"
        assert params.is_free is False
        assert params.resolution_key is None
        assert params.has_success_evidence is False

    def test_blank_values_are_omitted(self):
        """Test that blank values count as absent."""
        params = parse_redirect_params({"transaction_uid": "  ", "order": ""})
        assert params.confirmation_token is None
        assert params.order_id is None

    def test_free_flag_requires_literal_true(self):
        """Test that only free=true marks the redirect as free."""
        assert parse_redirect_params({"free": "1"}).is_free is False
        assert parse_redirect_params({"free": "false"}).is_free is False

    def test_success_evidence(self):
        """Test that a token or a success status count as evidence."""
        assert parse_redirect_params({"transaction_uid": "tok"}).has_success_evidence
        assert parse_redirect_params({"status": "success"}).has_success_evidence
        assert not parse_redirect_params({"status": "failure"}).has_success_evidence

    def test_resolution_key_prefers_page_request(self):
        """Test that passes are keyed by page request id first."""
        params = parse_redirect_params({"page_request_uid": "abc", "order": "txn_1"})
        assert params.resolution_key == "abc"

    def test_parse_full_url(self):
        """Test parsing a complete return URL."""
        params = parse_return_url(
            "https://app.example.com/payment-result?page_request_uid=abc&transaction_uid=tok_9"
        )
        assert params.page_request_id == "abc"
        assert params.confirmation_token == "tok_9"
