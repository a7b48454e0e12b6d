"""
App Store receipt verification client.

Receipts are verified against the production endpoint first; a status of
21007 means the receipt belongs to the sandbox, in which case the same
request is sent to the sandbox endpoint. The decoded response is returned
as-is; interpreting the status is the caller's job.
"""

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


PRODUCTION_VERIFY_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_VERIFY_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

STATUS_VALID = 0
STATUS_SANDBOX_RECEIPT = 21007

# Documented verifyReceipt status codes
STATUS_MESSAGES = {
    21000: "The request to the App Store was not made using HTTP POST",
    21002: "The receipt data is malformed",
    21003: "The receipt could not be authenticated",
    21004: "The shared secret does not match the account's shared secret",
    21005: "The receipt server is temporarily unavailable",
    21006: "The subscription has expired",
    21007: "The receipt is from the test environment",
    21008: "The receipt is from the production environment",
    21009: "Internal data access error",
    21010: "The user account cannot be found or has been deleted",
}


class AppleVerificationError(Exception):
    """Transport-level failure talking to the verification service."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


def describe_status(status: int) -> str:
    if 21100 <= status <= 21199:
        return "Internal App Store verification error"
    return STATUS_MESSAGES.get(status, f"Unknown verification status {status}")


class AppleReceiptClient:
    """Shared async client for verifyReceipt."""

    def __init__(
        self,
        shared_secret: Optional[str],
        timeout_seconds: float = 20.0,
        production_url: str = PRODUCTION_VERIFY_URL,
        sandbox_url: str = SANDBOX_VERIFY_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shared_secret = shared_secret
        self.production_url = production_url
        self.sandbox_url = sandbox_url
        self._client = httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=timeout_seconds,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _post(self, url: str, receipt_data: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "receipt-data": receipt_data,
            "exclude-old-transactions": True,
        }
        if self.shared_secret:
            payload["password"] = self.shared_secret

        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException:
            logger.error("Receipt verification timed out", extra={"url": url})
            raise AppleVerificationError("Receipt verification timed out")
        except httpx.HTTPStatusError as e:
            logger.error("Receipt verification HTTP error", extra={
                "url": url,
                "http_status": e.response.status_code,
            })
            raise AppleVerificationError(f"Verification service returned HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.error("Receipt verification request failed", extra={"url": url, "error": str(e)})
            raise AppleVerificationError(f"Verification request failed: {e}")
        except ValueError:
            raise AppleVerificationError("Verification service returned invalid JSON")

    async def verify_receipt(self, receipt_data: str) -> Dict[str, Any]:
        """Verify against production, falling back to sandbox on 21007."""
        body = await self._post(self.production_url, receipt_data)
        status = body.get("status")
        if status == STATUS_SANDBOX_RECEIPT:
            logger.info("Sandbox receipt, retrying against sandbox endpoint")
            body = await self._post(self.sandbox_url, receipt_data)
            body.setdefault("environment", "Sandbox")
        return body
