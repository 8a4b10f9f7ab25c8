import base64
import hashlib
import hmac
import logging
import re
import time
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import httpx

from checkout_service.application.interfaces import PaymentProvider
from checkout_service.domain.exceptions import (
    InvalidCallbackError, InvalidPaymentDetailsError, PaymentGatewayError
)
from checkout_service.domain.models import Order, PaymentMethod, PaymentOutcome, ProviderResponse

logger = logging.getLogger(__name__)

MPESA_PHONE_PATTERN = re.compile(r"^(\+254|0)[17]\d{8}$")
# Daraja answers these while the customer has not finished on the handset
MPESA_STILL_PROCESSING_CODES = {"1032"}
MPESA_STILL_PROCESSING_ERRORS = {"500.001.1001"}


def _minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _whole_units(amount: Decimal) -> int:
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _millis() -> int:
    return int(time.time() * 1000)


def _lower_keys(headers: dict) -> dict:
    return {str(k).lower(): v for k, v in headers.items()}


def _json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def normalize_mpesa_phone(phone: str) -> str:
    """Validates a Kenyan mobile number and returns it as 2547XXXXXXXX."""
    phone = (phone or "").replace(" ", "")
    if not MPESA_PHONE_PATTERN.match(phone):
        raise InvalidPaymentDetailsError(f"Invalid M-Pesa phone number: {phone}")
    if phone.startswith("+"):
        return phone[1:]
    return "254" + phone[1:]


class _HTTPProvider(PaymentProvider):
    def __init__(self, base_url: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport)


class MpesaStkPushProvider(_HTTPProvider):
    """Safaricom Daraja STK push: the customer approves on the handset and
    Daraja reports the outcome to our callback URL."""

    method = PaymentMethod.MPESA
    is_async = True
    supports_status_query = True

    def __init__(
        self, base_url: str, consumer_key: str, consumer_secret: str, short_code: str, passkey: str,
        callback_url: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout, transport)
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._short_code = short_code
        self._passkey = passkey
        self._callback_url = callback_url

    def _password(self, timestamp: str) -> str:
        raw = f"{self._short_code}{self._passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        response = await client.get(
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self._consumer_key, self._consumer_secret),
        )
        if response.status_code != 200:
            raise PaymentGatewayError(f"M-Pesa auth error: {response.status_code}")
        token = _json(response).get("access_token")
        if not token:
            raise PaymentGatewayError("M-Pesa auth returned no access token")
        return token

    async def initiate(self, order: Order, details: dict) -> ProviderResponse:
        phone = normalize_mpesa_phone(details.get("phone_number") or order.shipping_address.phone)
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self._short_code,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": _whole_units(order.total_amount),
            "PartyA": phone,
            "PartyB": self._short_code,
            "PhoneNumber": phone,
            "CallBackURL": self._callback_url,
            "AccountReference": order.order_number,
            "TransactionDesc": f"Payment for order {order.order_number}",
        }
        try:
            async with self._client() as client:
                token = await self._access_token(client)
                response = await client.post(
                    "/mpesa/stkpush/v1/processrequest",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.RequestError as e:
            logger.error(f"M-Pesa connection error: {e}")
            raise PaymentGatewayError(f"M-Pesa unavailable: {str(e)}")

        if response.status_code >= 500:
            raise PaymentGatewayError(f"M-Pesa error: {response.status_code}")
        data = _json(response)
        if response.status_code == 200 and str(data.get("ResponseCode")) == "0":
            return ProviderResponse(
                outcome=PaymentOutcome.PENDING,
                correlation_id=data["CheckoutRequestID"],
                provider_refs={
                    "checkout_request_id": data["CheckoutRequestID"],
                    "merchant_request_id": data.get("MerchantRequestID"),
                    "phone_number": phone,
                },
                result_code="0",
                customer_message=data.get("CustomerMessage") or "Check your phone to complete the M-Pesa payment",
            )
        return ProviderResponse(
            outcome=PaymentOutcome.FAILED,
            result_code=str(data.get("ResponseCode") or data.get("errorCode") or response.status_code),
            failure_reason=data.get("errorMessage") or data.get("ResponseDescription") or "STK push rejected",
        )

    async def query_status(self, correlation_id: str) -> ProviderResponse:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        try:
            async with self._client() as client:
                token = await self._access_token(client)
                response = await client.post(
                    "/mpesa/stkpushquery/v1/query",
                    json={
                        "BusinessShortCode": self._short_code,
                        "Password": self._password(timestamp),
                        "Timestamp": timestamp,
                        "CheckoutRequestID": correlation_id,
                    },
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.RequestError as e:
            raise PaymentGatewayError(f"M-Pesa unavailable: {str(e)}")

        data = _json(response)
        if data.get("errorCode") in MPESA_STILL_PROCESSING_ERRORS:
            return ProviderResponse(outcome=PaymentOutcome.PENDING, correlation_id=correlation_id)
        if response.status_code >= 500:
            raise PaymentGatewayError(f"M-Pesa query error: {response.status_code}")

        result_code = str(data.get("ResultCode", ""))
        if result_code == "0":
            outcome = PaymentOutcome.COMPLETED
        elif result_code in MPESA_STILL_PROCESSING_CODES or result_code == "":
            outcome = PaymentOutcome.PENDING
        else:
            outcome = PaymentOutcome.FAILED
        return ProviderResponse(
            outcome=outcome,
            correlation_id=correlation_id,
            result_code=result_code or None,
            failure_reason=data.get("ResultDesc") if outcome == PaymentOutcome.FAILED else None,
        )

    def parse_callback(self, payload: dict) -> ProviderResponse:
        try:
            callback = payload["Body"]["stkCallback"]
            correlation_id = callback["CheckoutRequestID"]
            result_code = int(callback["ResultCode"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidCallbackError(f"Malformed M-Pesa callback: {e}")

        if result_code != 0:
            return ProviderResponse(
                outcome=PaymentOutcome.FAILED,
                correlation_id=correlation_id,
                result_code=str(result_code),
                failure_reason=callback.get("ResultDesc"),
            )

        items = (callback.get("CallbackMetadata") or {}).get("Item") or []
        metadata = {item.get("Name"): item.get("Value") for item in items}
        return ProviderResponse(
            outcome=PaymentOutcome.COMPLETED,
            correlation_id=correlation_id,
            result_code="0",
            provider_refs={
                "mpesa_receipt_number": metadata.get("MpesaReceiptNumber"),
                "transaction_date": metadata.get("TransactionDate"),
                "phone_number": metadata.get("PhoneNumber"),
                "amount": metadata.get("Amount"),
            },
        )

    def callback_ack(self) -> dict:
        return {"ResultCode": 0, "ResultDesc": "Success"}


class StripeCardProvider(_HTTPProvider):
    method = PaymentMethod.CARD
    supports_status_query = True

    PENDING_STATUSES = {"requires_action", "requires_confirmation", "processing"}

    def __init__(
        self, base_url: str, secret_key: str, return_url: str, currency: str = "KES",
        webhook_secret: str = "", timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout, transport)
        self._secret_key = secret_key
        self._return_url = return_url.rstrip("/")
        self._currency = currency.lower()
        self._webhook_secret = webhook_secret
        self.signed_callbacks = bool(webhook_secret)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._secret_key}"}

    async def initiate(self, order: Order, details: dict) -> ProviderResponse:
        payment_method_id = details.get("payment_method_id")
        if not payment_method_id:
            raise InvalidPaymentDetailsError("payment_method_id is required for card payments")
        form = {
            "amount": _minor_units(order.total_amount),
            "currency": self._currency,
            "payment_method": payment_method_id,
            "confirm": "true",
            "return_url": f"{self._return_url}/order-confirmation/{order.id}",
            "metadata[order_id]": order.id,
            "metadata[order_number]": order.order_number,
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    "/v1/payment_intents",
                    data=form,
                    headers={**self._headers(), "Idempotency-Key": f"{order.id}:{payment_method_id}"},
                )
        except httpx.RequestError as e:
            logger.error(f"Stripe connection error: {e}")
            raise PaymentGatewayError(f"Stripe unavailable: {str(e)}")
        return self._intent_response(response, payment_method_id)

    async def query_status(self, correlation_id: str) -> ProviderResponse:
        try:
            async with self._client() as client:
                response = await client.get(f"/v1/payment_intents/{correlation_id}", headers=self._headers())
        except httpx.RequestError as e:
            raise PaymentGatewayError(f"Stripe unavailable: {str(e)}")
        return self._intent_response(response)

    def _intent_response(self, response: httpx.Response, payment_method_id: Optional[str] = None) -> ProviderResponse:
        if response.status_code >= 500 or response.status_code in (401, 429):
            raise PaymentGatewayError(f"Stripe error: {response.status_code}")
        data = _json(response)
        if response.status_code != 200:
            error = data.get("error") or {}
            return ProviderResponse(
                outcome=PaymentOutcome.FAILED,
                result_code=error.get("decline_code") or error.get("code") or str(response.status_code),
                failure_reason=error.get("message") or "Card declined",
            )
        return self._from_intent(data, payment_method_id)

    def _from_intent(self, intent: dict, payment_method_id: Optional[str] = None) -> ProviderResponse:
        status = intent.get("status")
        refs = {
            "payment_intent_id": intent.get("id"),
            "card_reference": intent.get("payment_method") or payment_method_id,
        }
        if status == "succeeded":
            return ProviderResponse(
                outcome=PaymentOutcome.COMPLETED, correlation_id=intent.get("id"), provider_refs=refs,
                result_code=status,
            )
        if status in self.PENDING_STATUSES:
            refs["client_secret"] = intent.get("client_secret")
            return ProviderResponse(
                outcome=PaymentOutcome.PENDING,
                correlation_id=intent.get("id"),
                provider_refs=refs,
                result_code=status,
                customer_message="Additional authentication required to complete the card payment",
            )
        last_error = intent.get("last_payment_error") or {}
        return ProviderResponse(
            outcome=PaymentOutcome.FAILED,
            correlation_id=intent.get("id"),
            provider_refs=refs,
            result_code=status,
            failure_reason=last_error.get("message") or f"Payment {status}",
        )

    def verify_callback(self, raw_body: bytes, headers: dict) -> bool:
        if not self._webhook_secret:
            return True
        signature = _lower_keys(headers).get("stripe-signature", "")
        parts = dict(p.split("=", 1) for p in signature.split(",") if "=" in p)
        if "t" not in parts or "v1" not in parts:
            return False
        signed = f"{parts['t']}.".encode() + raw_body
        expected = hmac.new(self._webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, parts["v1"])

    def parse_callback(self, payload: dict) -> ProviderResponse:
        event_type = payload.get("type")
        intent = (payload.get("data") or {}).get("object")
        if not event_type or not isinstance(intent, dict) or not intent.get("id"):
            raise InvalidCallbackError("Malformed Stripe event")
        if event_type == "payment_intent.payment_failed":
            return self._from_intent({**intent, "status": "requires_payment_method"})
        if event_type == "payment_intent.succeeded":
            return self._from_intent(intent)
        return ProviderResponse(outcome=PaymentOutcome.PENDING, correlation_id=intent["id"])


class PaystackProvider(_HTTPProvider):
    """Redirect checkout: the customer pays on Paystack's page and Paystack
    posts a signed charge event back."""

    method = PaymentMethod.PAYSTACK
    is_async = True
    supports_status_query = True
    signed_callbacks = True

    def __init__(
        self, base_url: str, secret_key: str, callback_url: str, currency: str = "KES",
        timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout, transport)
        self._secret_key = secret_key
        self._callback_url = callback_url
        self._currency = currency

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._secret_key}"}

    async def initiate(self, order: Order, details: dict) -> ProviderResponse:
        email = details.get("email") or order.shipping_address.email
        if not email:
            raise InvalidPaymentDetailsError("email is required for Paystack payments")
        payload = {
            "email": email,
            "amount": _minor_units(order.total_amount),
            "currency": self._currency,
            "reference": f"{order.order_number}_{_millis()}",
            "callback_url": self._callback_url,
            "metadata": {"order_id": order.id, "order_number": order.order_number},
        }
        try:
            async with self._client() as client:
                response = await client.post("/transaction/initialize", json=payload, headers=self._headers())
        except httpx.RequestError as e:
            logger.error(f"Paystack connection error: {e}")
            raise PaymentGatewayError(f"Paystack unavailable: {str(e)}")

        if response.status_code >= 500:
            raise PaymentGatewayError(f"Paystack error: {response.status_code}")
        body = _json(response)
        if response.status_code == 200 and body.get("status"):
            data = body["data"]
            return ProviderResponse(
                outcome=PaymentOutcome.PENDING,
                correlation_id=data["reference"],
                provider_refs={
                    "reference": data["reference"],
                    "authorization_url": data.get("authorization_url"),
                    "access_code": data.get("access_code"),
                },
                customer_message="Complete the payment on the Paystack checkout page",
            )
        return ProviderResponse(
            outcome=PaymentOutcome.FAILED,
            result_code=str(response.status_code),
            failure_reason=body.get("message") or "Paystack rejected the transaction",
        )

    async def query_status(self, correlation_id: str) -> ProviderResponse:
        try:
            async with self._client() as client:
                response = await client.get(f"/transaction/verify/{correlation_id}", headers=self._headers())
        except httpx.RequestError as e:
            raise PaymentGatewayError(f"Paystack unavailable: {str(e)}")
        if response.status_code >= 500:
            raise PaymentGatewayError(f"Paystack error: {response.status_code}")
        data = _json(response).get("data") or {}
        return self._from_transaction(correlation_id, data.get("status"), data)

    def _from_transaction(self, reference: str, status: Optional[str], data: dict) -> ProviderResponse:
        if status == "success":
            outcome = PaymentOutcome.COMPLETED
        elif status in ("failed", "reversed"):
            outcome = PaymentOutcome.FAILED
        else:
            outcome = PaymentOutcome.PENDING
        return ProviderResponse(
            outcome=outcome,
            correlation_id=reference,
            result_code=status,
            provider_refs={"reference": reference, "channel": data.get("channel")},
            failure_reason=data.get("gateway_response") if outcome == PaymentOutcome.FAILED else None,
        )

    def verify_callback(self, raw_body: bytes, headers: dict) -> bool:
        signature = _lower_keys(headers).get("x-paystack-signature", "")
        expected = hmac.new(self._secret_key.encode(), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_callback(self, payload: dict) -> ProviderResponse:
        data = payload.get("data") or {}
        reference = data.get("reference")
        if not reference:
            raise InvalidCallbackError("Paystack event without reference")
        event = payload.get("event")
        if event == "charge.success":
            return self._from_transaction(reference, "success", data)
        if event == "charge.failed":
            return self._from_transaction(reference, "failed", data)
        return ProviderResponse(outcome=PaymentOutcome.PENDING, correlation_id=reference)


class BankTransferProvider(PaymentProvider):
    """Customer reports the transfer reference; reconciliation happens offline."""

    method = PaymentMethod.BANK_TRANSFER

    async def initiate(self, order: Order, details: dict) -> ProviderResponse:
        reference = details.get("reference")
        if not reference:
            raise InvalidPaymentDetailsError("reference is required for bank transfers")
        return ProviderResponse(
            outcome=PaymentOutcome.COMPLETED,
            correlation_id=f"BANK_{reference}",
            provider_refs={"bank_reference": reference, "verification": "pending"},
            customer_message="Bank transfer recorded, pending verification",
        )


class CashOnDeliveryProvider(PaymentProvider):
    method = PaymentMethod.CASH_ON_DELIVERY

    async def initiate(self, order: Order, details: dict) -> ProviderResponse:
        return ProviderResponse(
            outcome=PaymentOutcome.COMPLETED,
            provider_refs={"transaction_id": f"COD_{_millis()}"},
        )


def build_payment_providers(settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    service_url = settings.SERVICE_URL.rstrip("/")
    providers = [
        MpesaStkPushProvider(
            base_url=settings.MPESA_BASE_URL,
            consumer_key=settings.MPESA_CONSUMER_KEY,
            consumer_secret=settings.MPESA_CONSUMER_SECRET,
            short_code=settings.MPESA_SHORT_CODE,
            passkey=settings.MPESA_PASSKEY,
            callback_url=f"{service_url}/api/checkout/payment/callback",
            transport=transport,
        ),
        StripeCardProvider(
            base_url=settings.STRIPE_BASE_URL,
            secret_key=settings.STRIPE_SECRET_KEY,
            return_url=settings.FRONTEND_URL,
            currency=settings.CURRENCY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            transport=transport,
        ),
        PaystackProvider(
            base_url=settings.PAYSTACK_BASE_URL,
            secret_key=settings.PAYSTACK_SECRET_KEY,
            callback_url=f"{settings.FRONTEND_URL.rstrip('/')}/payment-callback",
            currency=settings.CURRENCY,
            transport=transport,
        ),
        BankTransferProvider(),
        CashOnDeliveryProvider(),
    ]
    return {provider.method: provider for provider in providers}
