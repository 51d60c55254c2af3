import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from core.config import Settings
from domains.tracking.schemas import DispatchResult

logger = logging.getLogger(__name__)

AuditHook = Callable[[Dict[str, Any], Optional[int], Optional[str]], None]


class PixelFlyClient:
    """
    Sends one event to the PixelFly tracking endpoint.
    Never raises: every problem ends up as DispatchResult(success=False).
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.Client] = None,
        audit: Optional[AuditHook] = None,
    ) -> None:
        self.settings = settings
        self.http_client = http_client
        self.audit = audit

    def _post(self, body: bytes) -> httpx.Response:
        headers = {"Content-Type": "application/json", "X-PF-Key": self.settings.api_key}
        if self.http_client is not None:
            return self.http_client.post(
                self.settings.endpoint,
                content=body,
                headers=headers,
                timeout=self.settings.timeout,
            )
        return httpx.post(
            self.settings.endpoint,
            content=body,
            headers=headers,
            timeout=self.settings.timeout,
        )

    def send_event(self, payload: Dict[str, Any]) -> DispatchResult:
        event_name = payload.get("event", "unknown")
        event_id = payload.get("event_id", "unknown")

        if not self.settings.api_key:
            logger.error("❌ [PixelFly] API key not configured")
            return DispatchResult(success=False, error="API key not configured")

        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        try:
            response = self._post(body)
        except httpx.HTTPError as e:
            # timeouts are httpx.TimeoutException, a subclass of HTTPError
            logger.error(f"❌ [PixelFly] Request failed for {event_id}: {e}")
            return DispatchResult(success=False, error=str(e))

        if self.settings.event_logging and self.audit is not None:
            try:
                self.audit(payload, response.status_code, response.text)
            except Exception as e:
                logger.warning(f"⚠️ [PixelFly] Could not write event log: {e}")

        if 200 <= response.status_code < 300:
            logger.info(f"✅ [PixelFly] {event_name} {event_id} sent.")
            logger.debug(f"[PixelFly] Response body: {response.text}")
            try:
                data = response.json()
            except ValueError:
                data = None
            return DispatchResult(
                success=True, response=data, status_code=response.status_code
            )

        logger.error(
            f"❌ [PixelFly] API returned {response.status_code} for {event_id}: "
            f"{response.text}"
        )
        return DispatchResult(
            success=False,
            status_code=response.status_code,
            error=f"API returned error: {response.status_code}",
        )

    def test_connection(self, currency: str = "USD") -> Dict[str, Any]:
        if not self.settings.api_key:
            return {"success": False, "message": "API key is not configured"}

        result = self.send_event(
            {
                "event": "test_connection",
                "event_id": f"test_{int(time.time())}",
                "value": 0,
                "currency": currency,
            }
        )
        if result.success:
            return {
                "success": True,
                "message": "Connection successful!",
                "response": result.response,
            }
        return {
            "success": False,
            "message": "Connection failed. Please check your API key and endpoint.",
        }
