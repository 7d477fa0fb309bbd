from sessionguard.logging import (
    _add_correlation_id,
    _redact_secrets,
    correlation_id_var,
    set_correlation_id,
)


def test_credential_values_are_masked():
    event = _redact_secrets(
        None,
        "info",
        {
            "event": "refresh_denied",
            "access_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "Cookie": "SESSION=abcdef",
            "session_id": "sid-123456",
        },
    )

    assert event["access_token"] == "ey***ig"
    assert event["Cookie"] == "SE***ef"
    assert event["session_id"] == "sid-123456"


def test_short_and_non_string_values_pass_through():
    event = _redact_secrets(None, "info", {"token": "abc", "token_count": 3})

    assert event == {"token": "abc", "token_count": 3}


def test_correlation_id_is_attached():
    reset = correlation_id_var.set(None)
    try:
        cid = set_correlation_id("req-42")
        event = _add_correlation_id(None, "info", {"event": "x"})
    finally:
        correlation_id_var.reset(reset)

    assert cid == "req-42"
    assert event["correlation_id"] == "req-42"


def test_correlation_id_generated_when_absent():
    reset = correlation_id_var.set(None)
    try:
        cid = set_correlation_id()
    finally:
        correlation_id_var.reset(reset)

    assert len(cid) == 36
