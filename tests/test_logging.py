import pytest

from authgate.logging import (
    _redact_sensitive,
    get_correlation_id,
    set_correlation_id,
)


class TestRedaction:
    @pytest.mark.parametrize(
        "key",
        ["password", "jwt_secret", "refresh_token", "authorization", "set_cookie"],
    )
    def test_secrets_fully_redacted(self, key):
        event = _redact_sensitive(None, "info", {"event": "x", key: "very-sensitive-value"})
        assert event[key] == "[REDACTED]"

    @pytest.mark.parametrize("key", ["email", "login", "client_ip", "client_addr"])
    def test_pii_partially_masked(self, key):
        event = _redact_sensitive(None, "info", {"event": "x", key: "alice@example.com"})
        assert event[key] == "al***om"

    def test_other_fields_untouched(self):
        event = {"event": "login_succeeded", "user_id": "u-1", "count": 3}
        assert _redact_sensitive(None, "info", dict(event)) == event

    def test_short_pii_left_alone(self):
        event = _redact_sensitive(None, "info", {"event": "x", "login": "bob"})
        assert event["login"] == "bob"


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id(None)
    assert cid
    assert get_correlation_id() == cid
    assert set_correlation_id("req-9") == "req-9"
