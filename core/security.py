import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException, Request

from core.config import get_settings

logger = logging.getLogger(__name__)


def calculate_signature(body_bytes: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body_bytes, hashlib.sha256).hexdigest()


async def verify_signature(request: Request) -> bool:
    """
    Verify the webhook signature (HMAC-SHA256 over the raw body)
    """

    # 1. header signature
    signature = request.headers.get("X-Signature")
    if not signature:
        logger.warning(" X-Signature header is missing")
        raise HTTPException(status_code=403, detail="X-Signature header is required")

    # 2. the body can only be read once, put it back for the route handler
    body_bytes = await request.body()

    async def receive() -> Dict[str, Any]:
        return {"type": "http.request", "body": body_bytes}

    request._receive = receive

    # 3. calculate HMAC
    expected_signature = calculate_signature(body_bytes, get_settings().secret_key)

    # 4. compare
    if not hmac.compare_digest(signature, expected_signature):
        logger.error(" X-Signature header is invalid")
        raise HTTPException(status_code=403, detail="X-Signature header is invalid")
    return True


async def verify_admin_key(x_admin_key: Optional[str] = Header(None)) -> bool:
    """Operator endpoints require the shared admin key."""
    admin_key = get_settings().admin_api_key
    if not admin_key:
        logger.error(" ADMIN_API_KEY is not configured, operator API disabled")
        raise HTTPException(status_code=403, detail="Operator API is disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, admin_key):
        logger.warning(" X-Admin-Key header is invalid")
        raise HTTPException(status_code=403, detail="X-Admin-Key header is invalid")
    return True
