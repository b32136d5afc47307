"""Tests for tool credential and customer email redaction."""

from helpdesk.utils.redaction import (
    REDACTED,
    mask_email,
    redact_headers,
    sanitize_error_message,
    tool_secrets,
)


class TestMaskEmail:

    def test_masks_local_part(self):
        assert mask_email("customer jane.doe@example.com asked") == "customer j***@example.com asked"

    def test_masks_url_encoded_query_value(self):
        url = "https://api.example.com/orders?email=jane%40example.co.uk&limit=5"
        assert mask_email(url) == "https://api.example.com/orders?email=j***%40example.co.uk&limit=5"

    def test_leaves_plain_hosts_alone(self):
        assert mask_email("https://api.example.com/orders/A1") == "https://api.example.com/orders/A1"


class TestRedactHeaders:

    def test_only_content_headers_visible(self):
        headers = {
            "Content-Type": "application/json",
            "Authorization": "Bearer tok_123",
            "X-Shop-Key": "acme-key",
        }

        assert redact_headers(headers) == {
            "Content-Type": "application/json",
            "Authorization": REDACTED,
            "X-Shop-Key": REDACTED,
        }

    def test_does_not_mutate_input(self):
        headers = {"Authorization": "Bearer tok_123"}
        redact_headers(headers)
        assert headers == {"Authorization": "Bearer tok_123"}


class TestToolSecrets:

    def test_collects_token_and_header_values(self):
        assert tool_secrets("tok_123", {"X-Shop-Key": "acme-key", "X-Env": "eu"}) == [
            "tok_123",
            "acme-key",
        ]

    def test_missing_values(self):
        assert tool_secrets(None, None) == []


class TestSanitizeErrorMessage:

    def test_none_passes_through(self):
        assert sanitize_error_message(None) is None

    def test_strips_known_secrets(self):
        msg = "upstream rejected key acme-key-long for shop"
        result = sanitize_error_message(msg, secrets=["acme-key", "acme-key-long"])
        assert result == f"upstream rejected key {REDACTED} for shop"

    def test_redacts_bearer_credentials(self):
        msg = "Request failed with Authorization: Bearer sk-live-123"
        result = sanitize_error_message(msg)
        assert "sk-live-123" not in result
        assert result.endswith(f"Bearer {REDACTED}")

    def test_masks_customer_emails(self):
        result = sanitize_error_message("no customer found for jane@example.com")
        assert result == "no customer found for j***@example.com"

    def test_truncates(self):
        result = sanitize_error_message("x" * 50, max_length=10)
        assert result == "xxxxxxx..."
