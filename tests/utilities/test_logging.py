from mcplink.utilities.logging import redact_sensitive_data


def test_redacts_credential_headers():
    headers = {"Authorization": "Bearer s3cret", "Accept": "text/event-stream", "X-API-Key": "k"}

    assert redact_sensitive_data(headers) == {
        "Authorization": "***",
        "Accept": "text/event-stream",
        "X-API-Key": "***",
    }
    assert headers["Authorization"] == "Bearer s3cret"


def test_custom_keys():
    assert redact_sensitive_data({"DB_PASSWORD": "pw", "DB_HOST": "h"}, {"db_password"}) == {
        "DB_PASSWORD": "***",
        "DB_HOST": "h",
    }


def test_none():
    assert redact_sensitive_data(None) is None
