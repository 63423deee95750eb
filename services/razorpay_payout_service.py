"""
Razorpay Payouts API client (RazorpayX)
Contacts, fund accounts and payouts over the REST API with unified retry
"""

import logging
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from models import PayoutErrorCode, PayoutStatus
from services.api_adapter_retry import APIAdapterRetry, APIRetryException, ProviderHTTPError
from utils.exception_handler import PayoutUnavailableError

logger = logging.getLogger(__name__)


# Provider payout status -> local status. "processed" means the bank accepted the
# transfer; webhook and sync handling promote it to completed.
RAZORPAY_STATUS_MAP = {
    "created": PayoutStatus.PROCESSING,
    "queued": PayoutStatus.PROCESSING,
    "pending": PayoutStatus.PROCESSING,
    "processing": PayoutStatus.PROCESSING,
    "processed": PayoutStatus.SENT,
    "reversed": PayoutStatus.REVERSED,
    "cancelled": PayoutStatus.FAILED,
    "rejected": PayoutStatus.FAILED,
    "failed": PayoutStatus.FAILED,
}


class RazorpayPayoutService(APIAdapterRetry):
    """RazorpayX payout client with unified retry system"""

    def __init__(self):
        super().__init__(
            service_name="razorpay",
            timeout=Config.RAZORPAY_TIMEOUT,
            max_attempts=Config.RAZORPAY_MAX_RETRIES + 1,
        )

    def _map_provider_error_to_unified(self, exception: Exception, context: Optional[Dict] = None) -> PayoutErrorCode:
        """
        Map Razorpay error bodies ({"error": {"code", "description", "field"}}) to unified codes
        """
        if isinstance(exception, ProviderHTTPError):
            error = exception.body.get("error", {}) if isinstance(exception.body, dict) else {}
            code = (error.get("code") or "").upper()
            description = (error.get("description") or "").lower()

            if exception.status == 401 or "authentication" in description:
                return PayoutErrorCode.API_AUTHENTICATION_FAILED
            if "insufficient" in description or "balance" in description:
                return PayoutErrorCode.API_INSUFFICIENT_FUNDS
            if error.get("field") in ("ifsc", "account_number") or "ifsc" in description:
                return PayoutErrorCode.INVALID_BANK_ACCOUNT
            if code == "SERVER_ERROR" or exception.status >= 500:
                return PayoutErrorCode.SERVICE_UNAVAILABLE
            if exception.status == 429:
                return PayoutErrorCode.RATE_LIMIT_EXCEEDED
            if code == "BAD_REQUEST_ERROR":
                return PayoutErrorCode.API_INVALID_REQUEST
        return PayoutErrorCode.UNKNOWN_ERROR

    def _get_circuit_breaker_name(self) -> str:
        return "razorpay"

    def is_available(self) -> bool:
        return Config.is_razorpay_configured()

    @staticmethod
    def map_status(provider_status: Optional[str]) -> PayoutStatus:
        return RAZORPAY_STATUS_MAP.get((provider_status or "").lower(), PayoutStatus.PENDING)

    @staticmethod
    def describe_error(exception: Exception) -> str:
        """Human-readable provider failure for payout records"""
        original = exception.original_exception if isinstance(exception, APIRetryException) else exception
        if isinstance(original, ProviderHTTPError) and isinstance(original.body, dict):
            description = original.body.get("error", {}).get("description")
            if description:
                return description
        return str(original) or type(original).__name__

    async def _request(self, method: str, endpoint: str, payload: Optional[Dict] = None,
                       operation: str = "unknown", idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        if not self.is_available():
            raise PayoutUnavailableError("Razorpay Payouts API not configured")

        url = f"{Config.RAZORPAY_BASE_URL.rstrip('/')}/{endpoint.lstrip('/')}"
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if idempotency_key:
            headers["X-Payout-Idempotency"] = idempotency_key
        auth = aiohttp.BasicAuth(Config.RAZORPAY_KEY_ID, Config.RAZORPAY_KEY_SECRET)

        @self.api_retry(context={"operation": operation})
        async def _call():
            return await self._make_http_request(method, url, headers=headers, json=payload, auth=auth)

        return await _call()

    async def create_contact(self, user_id: int, name: str, email: str) -> str:
        contact = await self._request(
            "POST", "/contacts",
            {
                "name": name,
                "email": email,
                "type": "customer",
                "reference_id": str(user_id),
                "notes": {"userId": str(user_id), "platform": "marketplace"},
            },
            operation="create_contact",
        )
        logger.info(f"👤 RAZORPAY_CONTACT_CREATED: user {user_id} contact {contact.get('id')}")
        return contact["id"]

    async def create_fund_account(self, contact_id: str, holder_name: str, ifsc: str, account_number: str) -> str:
        fund_account = await self._request(
            "POST", "/fund_accounts",
            {
                "contact_id": contact_id,
                "account_type": "bank_account",
                "bank_account": {"name": holder_name, "ifsc": ifsc, "account_number": account_number},
            },
            operation="create_fund_account",
        )
        logger.info(f"🏦 RAZORPAY_FUND_ACCOUNT_CREATED: contact {contact_id} fund account {fund_account.get('id')}")
        return fund_account["id"]

    async def create_payout(self, fund_account_id: str, amount_paise: int, reference_id: str,
                            narration: str, notes: Dict[str, str]) -> Dict[str, Any]:
        payout = await self._request(
            "POST", "/payouts",
            {
                "account_number": Config.RAZORPAY_ACCOUNT_NUMBER,
                "fund_account_id": fund_account_id,
                "amount": amount_paise,
                "currency": "INR",
                "mode": Config.RAZORPAY_PAYOUT_MODE,
                "purpose": "payout",
                "queue_if_low_balance": True,
                "reference_id": reference_id,
                "narration": narration[:30],
                "notes": notes,
            },
            operation="create_payout",
            idempotency_key=f"payout-{reference_id}",
        )
        logger.info(
            f"💸 RAZORPAY_PAYOUT_CREATED: reference {reference_id} id {payout.get('id')} "
            f"status {payout.get('status')} amount {amount_paise} paise"
        )
        return payout

    async def fetch_payout(self, provider_payout_id: str) -> Dict[str, Any]:
        payout = await self._request("GET", f"/payouts/{provider_payout_id}", operation="fetch_payout")
        return {
            "id": payout.get("id"),
            "status": payout.get("status"),
            "utr": payout.get("utr"),
            "failure_reason": payout.get("failure_reason")
                or (payout.get("status_details") or {}).get("description"),
        }


razorpay_payout_service = RazorpayPayoutService()


def get_razorpay_payout_service() -> RazorpayPayoutService:
    return razorpay_payout_service
