"""
Mobile-money gateway - M-Pesa Express (STK push).

The customer approves the charge on their handset; Safaricom then POSTs a
callback to our CallBackURL. The callback is the authoritative confirmation:
the status query only tells us whether the push failed or is still open.
Callbacks are unsigned, so the URL carries a shared secret token.
"""

import asyncio
import base64
import hmac
import json
import re
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

import httpx

from paygate.exceptions import (
    GatewayUnavailableError,
    InvalidRequestError,
    SignatureMismatchError,
)
from paygate.models.api import AmountPolicy, AttemptStatus, GatewayName
from paygate.models.domain import (
    PaymentAttemptResult,
    PaymentProof,
    ProviderSession,
    RefundOutcome,
    ReturnContext,
    WebhookRequest,
)
from paygate.observability.logging import get_logger
from paygate.services.gateways.base import raise_for_gateway_status, send_request

logger = get_logger(__name__)

NAIROBI = ZoneInfo("Africa/Nairobi")

CALLBACK_TOKEN_HEADER = "X-Callback-Token"
CALLBACK_TOKEN_QUERY = "token"

# Query error code Safaricom returns while the customer has not answered yet
STILL_PROCESSING_ERROR = "500.001.1001"

# Token refresh margin
TOKEN_EXPIRY_SKEW_SECONDS = 60

_PHONE_PREFIX = re.compile(r"^(?:\+?254|0)")


def normalize_msisdn(phone_number: str) -> str:
    """Normalize a Kenyan phone number to 2547XXXXXXXX."""
    digits = _PHONE_PREFIX.sub("254", phone_number.strip().replace(" ", ""))
    if not re.fullmatch(r"254\d{9}", digits):
        raise InvalidRequestError(f"Invalid mobile money phone number: {phone_number}")
    return digits


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """base64(shortcode + passkey + timestamp) as required by the STK API."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def to_minor_units(value: Any) -> int:
    """Convert an M-Pesa major-unit amount (int, float or str) to minor units."""
    try:
        amount = Decimal(str(value)) * 100
    except InvalidOperation as exc:
        raise InvalidRequestError(f"Invalid callback amount: {value!r}") from exc
    if amount != amount.to_integral_value():
        raise InvalidRequestError(f"Callback amount has sub-cent precision: {value!r}")
    return int(amount)


def _callback_items(callback: dict[str, Any]) -> dict[str, Any]:
    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    return {item["Name"]: item.get("Value") for item in items if "Name" in item}


class MpesaExpressAdapter:
    """
    M-Pesa Express adapter.

    Customers may pay less than requested (the ledger records the provider
    amount), so the amount policy is partial.
    """

    gateway = GatewayName.MOBILE_MONEY
    amount_policy = AmountPolicy.PARTIAL

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        callback_url: str,
        callback_token: str,
        currency: str = "KES",
        initiator_name: str = "",
        security_credential: str = "",
        reversal_result_url: str = "",
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.callback_token = callback_token
        self.currency = currency
        self.initiator_name = initiator_name
        self.security_credential = security_credential
        self.reversal_result_url = reversal_result_url or callback_url

        self._access_token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    # ========================================================================
    # Auth
    # ========================================================================

    async def _get_access_token(self) -> str:
        """OAuth client-credentials token, cached until shortly before expiry."""
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            response = await send_request(
                self.gateway,
                self.client,
                "GET",
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=httpx.BasicAuth(self.consumer_key, self.consumer_secret),
            )
            raise_for_gateway_status(self.gateway, response)

            data = response.json()
            token = data.get("access_token")
            if not token:
                raise GatewayUnavailableError(self.gateway.value, "token response missing token")

            expires_in = int(data.get("expires_in", 3599))
            self._access_token = token
            self._token_expires_at = (
                time.monotonic() + max(expires_in - TOKEN_EXPIRY_SKEW_SECONDS, 0)
            )
            return token

    async def _post(self, path: str, body: dict[str, Any]) -> httpx.Response:
        token = await self._get_access_token()
        return await send_request(
            self.gateway,
            self.client,
            "POST",
            f"{self.base_url}{path}",
            headers={"Authorization": f"Bearer {token}"},
            json=body,
        )

    def _timestamp(self) -> str:
        return datetime.now(NAIROBI).strftime("%Y%m%d%H%M%S")

    # ========================================================================
    # Adapter Operations
    # ========================================================================

    async def initiate(
        self,
        invoice_id: UUID,
        amount_minor: int,
        currency: str,
        return_context: ReturnContext,
    ) -> ProviderSession:
        """Send an STK push to the customer's handset."""
        if currency != self.currency:
            raise InvalidRequestError(f"Mobile money only supports {self.currency}")
        if amount_minor % 100:
            raise InvalidRequestError("Mobile money amounts must be whole units")
        if not return_context.phone_number:
            raise InvalidRequestError("phone_number is required for mobile money")

        phone = normalize_msisdn(return_context.phone_number)
        timestamp = self._timestamp()

        response = await self._post(
            "/mpesa/stkpush/v1/processrequest",
            {
                "BusinessShortCode": self.shortcode,
                "Password": stk_password(self.shortcode, self.passkey, timestamp),
                "Timestamp": timestamp,
                "TransactionType": "CustomerPayBillOnline",
                "Amount": amount_minor // 100,
                "PartyA": phone,
                "PartyB": self.shortcode,
                "PhoneNumber": phone,
                "CallBackURL": self.callback_url,
                "AccountReference": str(invoice_id)[:12],
                "TransactionDesc": (return_context.description or "Invoice payment")[:13],
            },
        )
        raise_for_gateway_status(self.gateway, response)

        data = response.json()
        if str(data.get("ResponseCode")) != "0" or not data.get("CheckoutRequestID"):
            raise InvalidRequestError(
                f"STK push rejected: {data.get('ResponseDescription', 'unknown')}"
            )

        logger.info(
            "mpesa_stk_push_sent",
            invoice_id=str(invoice_id),
            checkout_request_id=data["CheckoutRequestID"],
            amount_minor=amount_minor,
        )

        return ProviderSession(session_ref=data["CheckoutRequestID"])

    async def verify(self, session_ref: str, proof: PaymentProof) -> PaymentAttemptResult:
        """
        Query STK status.

        A zero result code still yields PENDING: only the callback carries the
        receipt number the ledger keys on.
        """
        timestamp = self._timestamp()
        response = await self._post(
            "/mpesa/stkpushquery/v1/query",
            {
                "BusinessShortCode": self.shortcode,
                "Password": stk_password(self.shortcode, self.passkey, timestamp),
                "Timestamp": timestamp,
                "CheckoutRequestID": session_ref,
            },
        )

        try:
            data: dict[str, Any] = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400 and data.get("errorCode") == STILL_PROCESSING_ERROR:
            return self._pending(session_ref, "processing")
        raise_for_gateway_status(self.gateway, response)

        result_code = str(data.get("ResultCode", ""))
        if result_code == "0":
            return self._pending(session_ref, "completed_awaiting_callback")
        if result_code == "":
            return self._pending(session_ref, "unknown")

        return PaymentAttemptResult(
            gateway=self.gateway,
            session_ref=session_ref,
            status=AttemptStatus.FAILED,
            amount_minor=None,
            currency=None,
            provider_transaction_ref=None,
            raw_status=result_code,
            failure_reason=data.get("ResultDesc") or f"result code {result_code}",
        )

    def _pending(self, session_ref: str, raw_status: str) -> PaymentAttemptResult:
        return PaymentAttemptResult(
            gateway=self.gateway,
            session_ref=session_ref,
            status=AttemptStatus.PENDING,
            amount_minor=None,
            currency=None,
            provider_transaction_ref=None,
            raw_status=raw_status,
        )

    async def parse_webhook(self, request: WebhookRequest) -> PaymentAttemptResult:
        """
        Authenticate the callback token and normalize Body.stkCallback.

        Reversal results posted to the same URL carry a top-level Result and
        are acknowledged as pending so they never touch the ledger.
        """
        supplied = request.header(CALLBACK_TOKEN_HEADER) or request.query.get(
            CALLBACK_TOKEN_QUERY, ""
        )
        if not self.callback_token or not hmac.compare_digest(
            supplied.encode("utf-8"), self.callback_token.encode("utf-8")
        ):
            raise SignatureMismatchError(self.gateway.value, "callback token does not verify")

        try:
            payload: dict[str, Any] = json.loads(request.body)
            if "Result" in payload:
                return self._reversal_result(payload["Result"])
            callback: dict[str, Any] = payload["Body"]["stkCallback"]
            checkout_request_id: str = callback["CheckoutRequestID"]
            result_code = int(callback["ResultCode"])
            items = _callback_items(callback) if result_code == 0 else {}
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise InvalidRequestError(f"Malformed mobile money callback: {exc}") from exc

        if result_code != 0:
            return PaymentAttemptResult(
                gateway=self.gateway,
                session_ref=checkout_request_id,
                status=AttemptStatus.FAILED,
                amount_minor=None,
                currency=None,
                provider_transaction_ref=None,
                raw_status=str(result_code),
                event_id=checkout_request_id,
                failure_reason=callback.get("ResultDesc") or f"result code {result_code}",
            )

        receipt = items.get("MpesaReceiptNumber")
        if not receipt or items.get("Amount") is None:
            raise InvalidRequestError("Successful callback missing receipt or amount")

        return PaymentAttemptResult(
            gateway=self.gateway,
            session_ref=checkout_request_id,
            status=AttemptStatus.SUCCEEDED,
            amount_minor=to_minor_units(items["Amount"]),
            currency=self.currency,
            provider_transaction_ref=str(receipt),
            raw_status="0",
            event_id=checkout_request_id,
        )

    def _reversal_result(self, result: dict[str, Any]) -> PaymentAttemptResult:
        """Log a reversal outcome reported to ResultURL."""
        result_code = int(result.get("ResultCode", -1))
        conversation_id = result.get("ConversationID")
        log = logger.info if result_code == 0 else logger.error
        log(
            "mpesa_reversal_result",
            result_code=result_code,
            result_desc=result.get("ResultDesc"),
            conversation_id=conversation_id,
            transaction_id=result.get("TransactionID"),
        )
        return PaymentAttemptResult(
            gateway=self.gateway,
            session_ref=None,
            status=AttemptStatus.PENDING,
            amount_minor=None,
            currency=None,
            provider_transaction_ref=None,
            raw_status=f"reversal_result:{result_code}",
            event_id=conversation_id,
        )

    async def refund(
        self,
        provider_transaction_ref: str,
        amount_minor: int,
        idempotency_key: str | None = None,
    ) -> RefundOutcome:
        """
        Request a transaction reversal.

        Safaricom accepts the request synchronously and reports the result to
        ResultURL; acceptance is treated as completion.
        """
        if amount_minor % 100:
            raise InvalidRequestError("Mobile money refunds must be whole units")

        response = await self._post(
            "/mpesa/reversal/v1/request",
            {
                "Initiator": self.initiator_name,
                "SecurityCredential": self.security_credential,
                "CommandID": "TransactionReversal",
                "TransactionID": provider_transaction_ref,
                "Amount": amount_minor // 100,
                "ReceiverParty": self.shortcode,
                "RecieverIdentifierType": "11",
                "ResultURL": self.reversal_result_url,
                "QueueTimeOutURL": self.reversal_result_url,
                "Remarks": "Refund",
                "Occasion": (idempotency_key or "refund")[:100],
            },
        )
        raise_for_gateway_status(self.gateway, response)

        data = response.json()
        accepted = str(data.get("ResponseCode")) == "0"
        logger.info(
            "mpesa_reversal_requested",
            transaction_id=provider_transaction_ref,
            accepted=accepted,
            conversation_id=data.get("ConversationID"),
        )
        return RefundOutcome(
            success=accepted,
            provider_refund_ref=data.get("ConversationID"),
            raw_status=str(data.get("ResponseDescription") or data.get("ResponseCode")),
        )
