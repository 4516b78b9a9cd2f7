from __future__ import annotations

import json
import logging

from itemsync.core.logging_utils import EnhancedJsonFormatter, generate_correlation_id


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="itemsync.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg="sync_started",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_correlation_id_is_short_hex():
    cid = generate_correlation_id()
    assert len(cid) == 12
    int(cid, 16)
    assert cid != generate_correlation_id()


def test_formatter_lifts_correlation_and_provider():
    payload = json.loads(
        EnhancedJsonFormatter().format(
            _record(correlation_id="abc123", provider_id="gh", added=3)
        )
    )

    assert payload["message"] == "sync_started"
    assert payload["level"] == "INFO"
    assert payload["correlation_id"] == "abc123"
    assert payload["provider_id"] == "gh"
    assert payload["extra"] == {"added": 3}
    assert payload["line"] == 10


def test_formatter_accepts_cid_alias():
    payload = json.loads(EnhancedJsonFormatter().format(_record(cid="scheduled_1")))
    assert payload["correlation_id"] == "scheduled_1"


def test_formatter_redacts_secrets():
    payload = json.loads(
        EnhancedJsonFormatter(include_location=False).format(
            _record(access_token="secret", refresh_token="also-secret", status=200)
        )
    )

    assert payload["extra"]["access_token"] == "[redacted]"
    assert payload["extra"]["refresh_token"] == "[redacted]"
    assert payload["extra"]["status"] == 200
    assert "line" not in payload
