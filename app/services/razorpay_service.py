"""
Razorpay payment gateway integration: webhook/checkout signature checks and payment lookups
"""
import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional, Union

import httpx

from app.config import settings
from app.services.errors import ProviderError
from app.services.http_client import get_with_retry, is_transient_status

logger = logging.getLogger(__name__)


def compute_signature(secret: str, message: Union[bytes, str]) -> str:
    """Hex HMAC-SHA256 as Razorpay sends it."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayService:
    """Razorpay API client for payment verification and lookups"""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        base_url: str = "https://api.razorpay.com"
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.auth_headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._get_auth_string()}"
        }

    def _get_auth_string(self) -> str:
        """Get base64 encoded auth string"""
        auth_string = f"{self.key_id}:{self.key_secret}"
        return base64.b64encode(auth_string.encode()).decode()

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """
        Verify X-Razorpay-Signature against the raw request bytes.
        Must run before the body is parsed; re-serialized JSON does not reproduce the signed bytes.
        """
        if not signature or not self.webhook_secret:
            return False
        expected = compute_signature(self.webhook_secret, raw_body)
        return hmac.compare_digest(expected, signature.strip())

    def verify_payment_signature(self, razorpay_order_id: str, razorpay_payment_id: str, signature: Optional[str]) -> bool:
        """Checkout handler signature: HMAC(key_secret, "<order_id>|<payment_id>")."""
        if not signature or not self.key_secret:
            return False
        expected = compute_signature(self.key_secret, f"{razorpay_order_id}|{razorpay_payment_id}")
        return hmac.compare_digest(expected, signature.strip())

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        """Fetch specific Razorpay payment"""
        url = f"{self.base_url}/v1/payments/{payment_id}"
        try:
            response = await get_with_retry(url, headers=self.auth_headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"Razorpay payment fetch failed: {e}", provider="razorpay", transient=True)
        if response.status_code != 200:
            logger.error("Razorpay payment API error: %s", response.status_code)
            raise ProviderError(
                f"Razorpay returned HTTP {response.status_code}",
                provider="razorpay",
                transient=is_transient_status(response.status_code),
                provider_status=response.status_code,
                body=response.text[:500],
            )
        payment = response.json()
        return {
            "razorpay_payment_id": payment.get("id"),
            "razorpay_order_id": payment.get("order_id"),
            "amount": payment.get("amount", 0),
            "currency": payment.get("currency", "INR"),
            "status": payment.get("status"),
            "method": payment.get("method"),
            "created_at": payment.get("created_at"),
            "captured": payment.get("captured"),
            "amount_refunded": payment.get("amount_refunded", 0),
        }


def get_razorpay_service() -> RazorpayService:
    """Get Razorpay service instance"""
    if not settings.RAZORPAY_WEBHOOK_SECRET:
        logger.warning("RAZORPAY_WEBHOOK_SECRET not configured")
    return RazorpayService(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
    )
