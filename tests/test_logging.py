from vauth.logging import (
    _redact,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


class TestRedaction:
    def test_secrets_are_fully_masked(self):
        event = _redact(None, "info", {"event": "x", "password": "hunter22", "plain_secret": "AB12CD"})
        assert event["password"] == "***"
        assert event["plain_secret"] == "***"

    def test_pii_keeps_prefix(self):
        event = _redact(None, "info", {"email": "alice@example.com"})
        assert event["email"] == "al***"

    def test_digests_and_ids_pass_through(self):
        event = _redact(None, "info", {"digest": "abc123", "token_id": "t1", "secret": None})
        assert event == {"digest": "abc123", "token_id": "t1", "secret": None}


class TestCorrelation:
    def test_set_and_get(self):
        assert set_correlation_id("req-1") == "req-1"
        assert get_correlation_id() == "req-1"

    def test_generated_when_missing(self):
        cid = set_correlation_id(None)
        assert cid and get_correlation_id() == cid


class TestSanitize:
    def test_strips_paths_and_credentials(self):
        message = sanitize_error_message(
            "failed writing /srv/vauth/state/vauth_store.json with password=hunter22"
        )
        assert "/srv/vauth" not in message
        assert "hunter22" not in message

    def test_strips_dsn(self):
        assert "s3cret" not in sanitize_error_message("cannot reach postgresql://u:s3cret@db/vauth")

    def test_empty_input(self):
        assert sanitize_error_message("") == "error"

    def test_truncates(self):
        assert len(sanitize_error_message("x" * 1000)) == 300
