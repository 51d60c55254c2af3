# tests/unit/test_client.py
import json
from typing import List
from unittest.mock import MagicMock

import httpx

from core.config import Settings
from domains.tracking.client import PixelFlyClient

PAYLOAD = {"event": "purchase", "event_id": "purchase_1001_1", "transaction_id": "1001"}


def _client(handler, **settings_overrides) -> PixelFlyClient:
    settings = Settings(api_key="pf-secret", endpoint="https://track.example.test/e")
    for key, value in settings_overrides.items():
        setattr(settings, key, value)
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return PixelFlyClient(settings, http_client=http_client)


def test_send_event_posts_json_with_key() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "ok"})

    result = _client(handler).send_event(PAYLOAD)

    assert result.success is True
    assert result.response == {"status": "ok"}
    assert seen[0].method == "POST"
    assert str(seen[0].url) == "https://track.example.test/e"
    assert seen[0].headers["X-PF-Key"] == "pf-secret"
    assert seen[0].headers["Content-Type"] == "application/json"
    assert json.loads(seen[0].content) == PAYLOAD


def test_non_2xx_is_failure() -> None:
    result = _client(lambda request: httpx.Response(503, text="busy")).send_event(PAYLOAD)

    assert result.success is False
    assert result.status_code == 503


def test_timeout_is_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    result = _client(handler).send_event(PAYLOAD)

    assert result.success is False
    assert "timed out" in (result.error or "")


def test_connection_error_is_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    assert _client(handler).send_event(PAYLOAD).success is False


def test_missing_api_key_sends_nothing() -> None:
    handler = MagicMock()

    result = _client(handler, api_key="").send_event(PAYLOAD)

    assert result.success is False
    handler.assert_not_called()


def test_2xx_without_json_body_is_success() -> None:
    result = _client(lambda request: httpx.Response(204)).send_event(PAYLOAD)

    assert result.success is True
    assert result.response is None


def test_audit_hook_only_when_logging_enabled() -> None:
    audit = MagicMock()
    handler = lambda request: httpx.Response(202, text='{"queued": true}')  # noqa: E731

    client = _client(handler)
    client.audit = audit
    client.send_event(PAYLOAD)
    audit.assert_not_called()

    client = _client(handler, event_logging=True)
    client.audit = audit
    client.send_event(PAYLOAD)
    audit.assert_called_once_with(PAYLOAD, 202, '{"queued": true}')


def test_audit_failure_does_not_fail_the_send() -> None:
    client = _client(lambda request: httpx.Response(200, json={}), event_logging=True)
    client.audit = MagicMock(side_effect=RuntimeError("log table missing"))

    assert client.send_event(PAYLOAD).success is True


def test_test_connection() -> None:
    ok = _client(lambda request: httpx.Response(200, json={"pong": True})).test_connection()
    broken = _client(lambda request: httpx.Response(401)).test_connection()
    unconfigured = _client(lambda request: httpx.Response(200), api_key="").test_connection()

    assert ok == {"success": True, "message": "Connection successful!", "response": {"pong": True}}
    assert broken["success"] is False
    assert unconfigured == {"success": False, "message": "API key is not configured"}
