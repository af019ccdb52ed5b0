"""Log redaction tests."""

from profileauth.logging import _redact_pii, redact_target


class TestRedaction:
    def test_target_is_masked_once(self):
        event = _redact_pii(None, "info", {"target": redact_target("knight@example.com")})

        assert event["target"] == "kn***@example.com"

    def test_pii_keys_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"email": "knight@example.com", "refresh_token": "abcdefgh", "token_version": 3},
        )

        assert event["email"] == "kn***om"
        assert event["refresh_token"] == "ab***gh"
        assert event["token_version"] == 3

    def test_redact_target_phone(self):
        assert redact_target("+15551234567") == "+15***67"
        assert redact_target("") == "redacted"
