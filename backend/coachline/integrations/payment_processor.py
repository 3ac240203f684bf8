"""
Payment processor collaborator.

``PaymentProcessor`` is the contract the booking, refund and payout engines
depend on. ``StripePaymentProcessor`` talks to Stripe; ``FakePaymentProcessor``
is an in-memory stand-in for tests and local development.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from pydantic import SecretStr
import stripe

from ..core.exceptions import ExternalServiceException, ValidationException

logger = logging.getLogger(__name__)


class PaymentProcessorError(ExternalServiceException):
    """Raised when the payment processor rejects a call or cannot be reached."""

    def __init__(
        self,
        message: str,
        *,
        error_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            service="stripe",
            code="PAYMENT_PROCESSOR_ERROR",
            details={"error_type": error_type, **(details or {})},
        )
        self.error_type = error_type


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str] = None


@dataclass(frozen=True)
class PaymentIntentInfo:
    id: str
    status: str
    charge_id: Optional[str]


@dataclass(frozen=True)
class RefundInfo:
    id: str
    amount_cents: int
    status: str


@dataclass(frozen=True)
class TransferInfo:
    id: str
    amount_cents: int


@dataclass(frozen=True)
class AccountInfo:
    id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

    @property
    def is_active(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


def _stringify_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (metadata or {}).items() if v is not None}


class PaymentProcessor(ABC):
    @abstractmethod
    def create_checkout(
        self,
        amount_cents: int,
        currency: str,
        destination_account: str,
        metadata: Mapping[str, Any],
        *,
        description: str = "",
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        ...

    @abstractmethod
    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        ...

    @abstractmethod
    def create_refund(
        self,
        charge_id: str,
        amount_cents: int,
        reason: str,
        metadata: Mapping[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> RefundInfo:
        ...

    @abstractmethod
    def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination_account: str,
        metadata: Mapping[str, Any],
        idempotency_key: str,
    ) -> TransferInfo:
        ...

    @abstractmethod
    def retrieve_account(self, account_id: str) -> AccountInfo:
        ...

    @abstractmethod
    def construct_webhook_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        ...


class StripePaymentProcessor(PaymentProcessor):
    """Stripe-backed processor using the module-level SDK."""

    def __init__(
        self,
        *,
        api_key: str | SecretStr,
        webhook_secret: str | SecretStr | None = None,
        success_url: str = "http://localhost:3000/app/student/bookings?success=true",
        cancel_url: str = "http://localhost:3000/coaches?canceled=true",
    ) -> None:
        secret_value = api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key
        if not secret_value:
            raise PaymentProcessorError("Stripe is not configured", error_type="not_configured")
        stripe.api_key = secret_value
        if isinstance(webhook_secret, SecretStr):
            webhook_secret = webhook_secret.get_secret_value()
        self._webhook_secret = webhook_secret or ""
        self._success_url = success_url
        self._cancel_url = cancel_url

    @staticmethod
    def _wrap(exc: stripe.StripeError, action: str) -> PaymentProcessorError:
        logger.error("Stripe %s failed: %s", action, exc)
        return PaymentProcessorError(
            f"Stripe {action} failed: {getattr(exc, 'user_message', None) or str(exc)}",
            error_type=type(exc).__name__,
        )

    def create_checkout(
        self,
        amount_cents: int,
        currency: str,
        destination_account: str,
        metadata: Mapping[str, Any],
        *,
        description: str = "",
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        meta = _stringify_metadata({**metadata, "destination_account": destination_account})
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "product_data": {"name": description or "Coaching session"},
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                payment_intent_data={
                    "transfer_group": f"coach:{destination_account}",
                    "metadata": meta,
                },
                success_url=self._success_url,
                cancel_url=self._cancel_url,
                metadata=meta,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._wrap(exc, "checkout creation") from exc
        return CheckoutSession(id=session.id, url=getattr(session, "url", None))

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as exc:
            raise self._wrap(exc, "payment intent lookup") from exc
        latest_charge = getattr(intent, "latest_charge", None)
        charge_id = latest_charge if isinstance(latest_charge, str) else getattr(latest_charge, "id", None)
        return PaymentIntentInfo(id=intent.id, status=intent.status, charge_id=charge_id)

    def create_refund(
        self,
        charge_id: str,
        amount_cents: int,
        reason: str,
        metadata: Mapping[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> RefundInfo:
        try:
            refund = stripe.Refund.create(
                charge=charge_id,
                amount=amount_cents,
                reason=reason,
                metadata=_stringify_metadata(metadata),
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._wrap(exc, "refund") from exc
        return RefundInfo(
            id=refund.id, amount_cents=int(refund.amount), status=refund.status or "pending"
        )

    def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination_account: str,
        metadata: Mapping[str, Any],
        idempotency_key: str,
    ) -> TransferInfo:
        try:
            transfer = stripe.Transfer.create(
                amount=amount_cents,
                currency=currency,
                destination=destination_account,
                metadata=_stringify_metadata(metadata),
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._wrap(exc, "transfer") from exc
        return TransferInfo(id=transfer.id, amount_cents=int(transfer.amount))

    def retrieve_account(self, account_id: str) -> AccountInfo:
        try:
            account = stripe.Account.retrieve(account_id)
        except stripe.StripeError as exc:
            raise self._wrap(exc, "account lookup") from exc
        return AccountInfo(
            id=account.id,
            charges_enabled=bool(getattr(account, "charges_enabled", False)),
            payouts_enabled=bool(getattr(account, "payouts_enabled", False)),
            details_submitted=bool(getattr(account, "details_submitted", False)),
        )

    def construct_webhook_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if not self._webhook_secret:
            raise PaymentProcessorError(
                "Webhook secret not configured", error_type="not_configured"
            )
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Invalid Stripe webhook signature")
            raise ValidationException("Invalid webhook signature", code="INVALID_SIGNATURE") from exc
        except ValueError as exc:
            raise ValidationException("Invalid webhook payload", code="INVALID_PAYLOAD") from exc
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)


@dataclass
class FakePaymentProcessor(PaymentProcessor):
    """
    In-memory processor for tests and local development.

    Payment intents and accounts are registered up front; ``fail_on`` names
    operations ("checkout", "payment_intent", "refund", "transfer",
    "account") that should raise ``PaymentProcessorError``.
    """

    payment_intents: Dict[str, PaymentIntentInfo] = field(default_factory=dict)
    accounts: Dict[str, AccountInfo] = field(default_factory=dict)
    fail_on: set = field(default_factory=set)
    checkouts: List[Dict[str, Any]] = field(default_factory=list)
    refunds: List[Dict[str, Any]] = field(default_factory=list)
    transfers: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._logger = logging.getLogger(self.__class__.__name__)

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise PaymentProcessorError(f"Simulated {operation} failure", error_type="simulated")

    def register_payment(
        self, payment_intent_id: str, *, charge_id: Optional[str] = None, status: str = "succeeded"
    ) -> PaymentIntentInfo:
        info = PaymentIntentInfo(
            id=payment_intent_id,
            status=status,
            charge_id=charge_id or f"ch_fake_{uuid4().hex[:16]}",
        )
        self.payment_intents[payment_intent_id] = info
        return info

    def register_account(
        self,
        account_id: str,
        *,
        charges_enabled: bool = True,
        payouts_enabled: bool = True,
        details_submitted: bool = True,
    ) -> AccountInfo:
        info = AccountInfo(account_id, charges_enabled, payouts_enabled, details_submitted)
        self.accounts[account_id] = info
        return info

    def create_checkout(
        self,
        amount_cents: int,
        currency: str,
        destination_account: str,
        metadata: Mapping[str, Any],
        *,
        description: str = "",
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        self._maybe_fail("checkout")
        session_id = f"cs_fake_{uuid4().hex[:16]}"
        self.checkouts.append(
            {
                "id": session_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "destination_account": destination_account,
                "metadata": _stringify_metadata(metadata),
            }
        )
        return CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}")

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        self._maybe_fail("payment_intent")
        info = self.payment_intents.get(payment_intent_id)
        if info is None:
            raise PaymentProcessorError(
                f"No such payment_intent: {payment_intent_id}", error_type="InvalidRequestError"
            )
        return info

    def create_refund(
        self,
        charge_id: str,
        amount_cents: int,
        reason: str,
        metadata: Mapping[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> RefundInfo:
        self._maybe_fail("refund")
        refund_id = f"re_fake_{uuid4().hex[:16]}"
        self.refunds.append(
            {
                "id": refund_id,
                "charge_id": charge_id,
                "amount_cents": amount_cents,
                "reason": reason,
                "metadata": _stringify_metadata(metadata),
            }
        )
        self._logger.debug("Fake refund created", extra={"refund_id": refund_id})
        return RefundInfo(id=refund_id, amount_cents=amount_cents, status="succeeded")

    def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination_account: str,
        metadata: Mapping[str, Any],
        idempotency_key: str,
    ) -> TransferInfo:
        self._maybe_fail("transfer")
        existing = self.transfers.get(idempotency_key)
        if existing is not None:
            return TransferInfo(id=existing["id"], amount_cents=existing["amount_cents"])
        transfer_id = f"tr_fake_{uuid4().hex[:16]}"
        self.transfers[idempotency_key] = {
            "id": transfer_id,
            "amount_cents": amount_cents,
            "currency": currency,
            "destination_account": destination_account,
            "metadata": _stringify_metadata(metadata),
        }
        return TransferInfo(id=transfer_id, amount_cents=amount_cents)

    def retrieve_account(self, account_id: str) -> AccountInfo:
        self._maybe_fail("account")
        info = self.accounts.get(account_id)
        if info is None:
            raise PaymentProcessorError(
                f"No such account: {account_id}", error_type="InvalidRequestError"
            )
        return info

    def construct_webhook_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if signature != "fake-signature":
            raise ValidationException("Invalid webhook signature", code="INVALID_SIGNATURE")
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise ValidationException("Invalid webhook payload", code="INVALID_PAYLOAD") from exc
