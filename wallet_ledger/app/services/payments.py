"""
Payment-provider adapters.

The workflow only ever sees an opaque reference and a success/failure
outcome. Each adapter owns an ``httpx.Client`` with a bounded timeout and
passes the caller's idempotency token through to the provider so a
retried capture or payout is answered with the original result instead of
moving money twice. Nothing here retries on its own.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

from ..core.config import Settings
from ..core.errors import ExternalPaymentError, PaymentTimeoutError, ValidationError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass
class ExternalOrder:
    reference: str
    status: str
    approval_url: Optional[str] = None


@dataclass
class ProviderResult:
    reference: str
    status: str
    succeeded: bool


class PaymentProvider:
    """Interface every rail implements."""

    name = "provider"
    label = "Payment"

    def create_order(
        self,
        amount: Decimal,
        *,
        idempotency_key: str,
        payment_method: Optional[str] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> ExternalOrder:
        raise NotImplementedError

    def capture_order(self, reference: str, *, idempotency_key: str) -> ProviderResult:
        raise NotImplementedError

    def payout(
        self, destination: str, amount: Decimal, *, idempotency_key: str
    ) -> ProviderResult:
        raise ExternalPaymentError(f"{self.label} withdrawals are not supported")

    def find_payout(self, idempotency_key: str) -> Optional[ProviderResult]:
        return None

    def health(self) -> bool:
        return True

    def close(self) -> None:
        pass


def _money(amount: Decimal) -> str:
    return str(amount.quantize(CENTS))


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _success_body(response: httpx.Response, path: str, message: str) -> dict[str, Any]:
    """Parse a 2xx answer; anything but a JSON object is a provider failure."""
    try:
        data = response.json()
    except ValueError as exc:
        logger.warning("payments.malformed_response", extra={"path": path})
        raise ExternalPaymentError(message) from exc
    if not isinstance(data, dict):
        logger.warning("payments.malformed_response", extra={"path": path})
        raise ExternalPaymentError(message)
    return data


def _required(data: dict[str, Any], key: str, message: str) -> Any:
    value = data.get(key)
    if not value:
        logger.warning("payments.missing_field", extra={"field": key})
        raise ExternalPaymentError(message)
    return value


class StripeCardProvider(PaymentProvider):
    """Card rail: manual-capture PaymentIntents, captured after code verification."""

    name = "card"
    label = "Card"

    DECLINE_MESSAGES = {
        "card_declined": "Your card was declined.",
        "expired_card": "Your card has expired.",
        "incorrect_cvc": "Your card's security code is incorrect.",
        "processing_error": "An error occurred while processing your card. Try again.",
        "payment_intent_unexpected_state": "The card payment can no longer be captured. Please start a new deposit.",
    }

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None) -> None:
        self.currency = settings.currency.lower()
        self.client = client or httpx.Client(
            base_url=settings.stripe_base_url,
            timeout=settings.payment_timeout_seconds,
            headers={"Authorization": f"Bearer {settings.stripe_api_key}"},
        )

    def _post(self, path: str, data: dict[str, Any], idempotency_key: str) -> dict[str, Any]:
        try:
            response = self.client.post(
                path, data=data, headers={"Idempotency-Key": idempotency_key}
            )
        except httpx.TimeoutException as exc:
            logger.warning("payments.card.timeout", extra={"path": path})
            raise PaymentTimeoutError(
                "The card processor did not respond in time. Please try again."
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("payments.card.transport_error", extra={"path": path})
            raise ExternalPaymentError() from exc

        if response.is_error:
            error = _error_body(response).get("error", {})
            code = error.get("decline_code") or error.get("code") or ""
            logger.warning(
                "payments.card.rejected",
                extra={"path": path, "status_code": response.status_code, "code": code},
            )
            raise ExternalPaymentError(
                self.DECLINE_MESSAGES.get(code, "Failed to process card payment.")
            )
        return _success_body(response, path, "Failed to process card payment.")

    def create_order(
        self,
        amount: Decimal,
        *,
        idempotency_key: str,
        payment_method: Optional[str] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> ExternalOrder:
        if not payment_method:
            raise ValidationError("Invalid token data")
        data = {
            "amount": int((amount * 100).to_integral_value()),
            "currency": self.currency,
            "payment_method": payment_method,
            "confirm": "true",
            "capture_method": "manual",
            "description": "Wallet deposit",
        }
        if return_url:
            data["return_url"] = return_url
        intent = self._post("/v1/payment_intents", data, idempotency_key)
        status = intent.get("status", "")
        if status not in {"requires_capture", "succeeded"}:
            raise ExternalPaymentError("The card payment could not be authorized.")
        reference = _required(intent, "id", "Failed to process card payment.")
        return ExternalOrder(reference=reference, status=status)

    def capture_order(self, reference: str, *, idempotency_key: str) -> ProviderResult:
        intent = self._post(
            f"/v1/payment_intents/{reference}/capture", {}, idempotency_key
        )
        status = intent.get("status", "")
        return ProviderResult(
            reference=intent.get("id", reference),
            status=status,
            succeeded=status == "succeeded",
        )

    def close(self) -> None:
        self.client.close()


class PayPalProvider(PaymentProvider):
    """PayPal Orders v2 for deposits, Payouts v1 for withdrawals."""

    name = "paypal"
    label = "PayPal"

    CAPTURE_STATUS_MESSAGES = {
        "VOIDED": "The PayPal payment was voided. Please try again.",
        "DECLINED": "The PayPal payment was declined. Please check your PayPal account and try again.",
        "EXPIRED": "The PayPal payment has expired. Please create a new deposit.",
        "PAYER_ACTION_REQUIRED": "Additional action is required from your PayPal account to complete this payment.",
    }
    ERROR_MESSAGES = {
        "RESOURCE_NOT_FOUND": "The PayPal order could not be found. It may have expired or been cancelled.",
        "UNPROCESSABLE_ENTITY": "The PayPal order cannot be processed. It may have already been captured or voided.",
        "INTERNAL_SERVER_ERROR": "PayPal experienced an internal error. Please try again later.",
        "INVALID_RESOURCE_ID": "Invalid PayPal order ID. Please create a new deposit.",
        "RECEIVER_UNREGISTERED": "The PayPal email address you provided isn't registered with PayPal or doesn't exist.",
        "VALIDATION_ERROR": "There was a validation error with your withdrawal request.",
        "INSUFFICIENT_FUNDS": "The PayPal account doesn't have sufficient funds to process this withdrawal.",
        "PERMISSION_DENIED": "Your PayPal account doesn't have permission to send money.",
        "RATE_LIMIT_REACHED": "Too many withdrawal requests. Please try again later.",
    }
    PAYOUT_ACCEPTED = {"PENDING", "PROCESSING", "SUCCESS"}
    DUPLICATE_BATCH_ISSUES = {"SENDER_BATCH_ID_ALREADY_USED", "DUPLICATE_REQUEST_ID"}

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None) -> None:
        self.currency = settings.currency.upper()
        self.client_id = settings.paypal_client_id or ""
        self.client_secret = settings.paypal_client_secret or ""
        self.client = client or httpx.Client(
            base_url=settings.paypal_base_url,
            timeout=settings.payment_timeout_seconds,
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            response = self.client.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("payments.paypal.auth_failed")
            raise ExternalPaymentError(
                "Failed to authenticate with PayPal. Please try again later."
            ) from exc
        auth_error = "Failed to authenticate with PayPal. Please try again later."
        data = _success_body(response, "/v1/oauth2/token", auth_error)
        self._token = _required(data, "access_token", auth_error)
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
        return self._token

    def _issues(self, response: httpx.Response) -> list[str]:
        body = _error_body(response)
        # The specific issue beats the generic error name.
        names = [detail.get("issue", "") for detail in body.get("details", []) or []]
        names.append(body.get("name", ""))
        return names

    def _error_message(self, response: httpx.Response, default: str) -> str:
        for name in self._issues(response):
            if name in self.ERROR_MESSAGES:
                return self.ERROR_MESSAGES[name]
        return default

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
        request_id: Optional[str] = None,
        default_error: str,
        allow_duplicate: bool = False,
    ) -> Optional[dict[str, Any]]:
        """Send one call; None only when ``allow_duplicate`` and PayPal already has the batch."""
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        try:
            response = self.client.request(method, path, json=payload, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("payments.paypal.timeout", extra={"path": path})
            raise PaymentTimeoutError(
                "PayPal did not respond in time. Please try again."
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("payments.paypal.transport_error", extra={"path": path})
            raise ExternalPaymentError(default_error) from exc

        if response.is_error:
            if allow_duplicate and self.DUPLICATE_BATCH_ISSUES.intersection(self._issues(response)):
                logger.info("payments.paypal.duplicate_batch", extra={"path": path})
                return None
            logger.warning(
                "payments.paypal.rejected",
                extra={"path": path, "status_code": response.status_code},
            )
            raise ExternalPaymentError(self._error_message(response, default_error))
        return _success_body(response, path, default_error)

    def _post(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        request_id: Optional[str] = None,
        default_error: str,
    ) -> dict[str, Any]:
        return self._request(
            "POST", path, payload=payload, request_id=request_id, default_error=default_error
        )

    def create_order(
        self,
        amount: Decimal,
        *,
        idempotency_key: str,
        payment_method: Optional[str] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> ExternalOrder:
        if not return_url or not cancel_url:
            raise ValidationError("Missing return or cancel URL")
        order = self._post(
            "/v2/checkout/orders",
            {
                "intent": "CAPTURE",
                "purchase_units": [
                    {"amount": {"currency_code": self.currency, "value": _money(amount)}}
                ],
                "application_context": {"return_url": return_url, "cancel_url": cancel_url},
            },
            request_id=idempotency_key,
            default_error="Error initiating PayPal deposit",
        )
        approval_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        return ExternalOrder(
            reference=_required(order, "id", "Error initiating PayPal deposit"),
            status=order.get("status", ""),
            approval_url=approval_url,
        )

    def capture_order(self, reference: str, *, idempotency_key: str) -> ProviderResult:
        capture = self._post(
            f"/v2/checkout/orders/{reference}/capture",
            {},
            request_id=idempotency_key,
            default_error="Failed to process PayPal deposit.",
        )
        status = capture.get("status", "")
        if status != "COMPLETED":
            raise ExternalPaymentError(
                self.CAPTURE_STATUS_MESSAGES.get(
                    status,
                    f"PayPal payment status: {status}. Please try again or contact support.",
                )
            )
        return ProviderResult(reference=capture.get("id", reference), status=status, succeeded=True)

    def _payout_result(self, body: dict[str, Any], idempotency_key: str) -> ProviderResult:
        header = body.get("batch_header") or {}
        status = header.get("batch_status", "")
        if status not in self.PAYOUT_ACCEPTED:
            raise ExternalPaymentError("Failed to process PayPal withdrawal. Please try again later.")
        return ProviderResult(
            reference=header.get("payout_batch_id", idempotency_key), status=status, succeeded=True
        )

    def payout(
        self, destination: str, amount: Decimal, *, idempotency_key: str
    ) -> ProviderResult:
        # sender_batch_id and PayPal-Request-Id are both the order reference,
        # so a retried payout replays or is refused as a duplicate batch.
        result = self._request(
            "POST",
            "/v1/payments/payouts",
            payload={
                "sender_batch_header": {
                    "sender_batch_id": idempotency_key,
                    "email_subject": "You have a payout from your wallet",
                    "email_message": "Your withdrawal has been processed and sent to your PayPal account.",
                },
                "items": [
                    {
                        "recipient_type": "EMAIL",
                        "amount": {"value": _money(amount), "currency": self.currency},
                        "note": "Wallet withdrawal",
                        "receiver": destination,
                        "sender_item_id": idempotency_key,
                    }
                ],
            },
            request_id=idempotency_key,
            default_error="Failed to process PayPal withdrawal.",
            allow_duplicate=True,
        )
        if result is None:
            existing = self.find_payout(idempotency_key)
            if existing is None:
                raise ExternalPaymentError("Failed to process PayPal withdrawal. Please try again later.")
            return existing
        return self._payout_result(result, idempotency_key)

    def find_payout(self, idempotency_key: str) -> Optional[ProviderResult]:
        """Look up the batch an earlier attempt created under this sender_batch_id."""
        body = self._request(
            "GET",
            "/v1/payments/payouts",
            params={"sender_batch_id": idempotency_key},
            default_error="Failed to look up PayPal withdrawal.",
        )
        if not body.get("batch_header"):
            items = body.get("items") or []
            if not items:
                return None
            body = items[0]
        logger.info("payments.paypal.payout_found", extra={"sender_batch_id": idempotency_key})
        return self._payout_result(body, idempotency_key)


    def close(self) -> None:
        self.client.close()


class PaymentGateway:
    """Registry of configured rails; built at startup and closed at shutdown."""

    def __init__(self, providers: Optional[dict[str, PaymentProvider]] = None) -> None:
        self.providers = dict(providers or {})

    def get(self, name: str) -> PaymentProvider:
        try:
            return self.providers[name]
        except KeyError as exc:
            raise ValidationError(f"Payment provider '{name}' is not available") from exc

    def health(self) -> dict[str, bool]:
        status = {}
        for name, provider in self.providers.items():
            try:
                status[name] = provider.health()
            except Exception:
                logger.exception("payments.health_failed", extra={"provider": name})
                status[name] = False
        return status

    def close(self) -> None:
        for provider in self.providers.values():
            provider.close()


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    providers: dict[str, PaymentProvider] = {}
    if settings.stripe_api_key:
        providers[StripeCardProvider.name] = StripeCardProvider(settings)
    if settings.paypal_client_id and settings.paypal_client_secret:
        providers[PayPalProvider.name] = PayPalProvider(settings)
    logger.info("payments.configured", extra={"providers": sorted(providers)})
    return PaymentGateway(providers)
