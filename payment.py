"""Payment coordinator boundary: capture a hold's amount, refund a cancelled booking."""

from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, NamedTuple, Optional, Set
import logging
import threading
import uuid

import requests

from errors import PaymentDeclined, PaymentTimeout, RefundFailed

logger = logging.getLogger(__name__)


class PaymentReceipt(NamedTuple):
    transaction_id: str
    amount: Decimal


class PaymentCoordinator(ABC):
    @abstractmethod
    def authorize_and_capture(
        self,
        amount: Decimal,
        payment_details: Optional[Dict[str, Any]],
        idempotency_key: Optional[str] = None,
    ) -> PaymentReceipt:
        """Charge the amount. Raises PaymentDeclined or PaymentTimeout."""

    @abstractmethod
    def refund(self, transaction_id: str) -> None:
        """Refund a captured transaction. Raises RefundFailed."""


class SimulatedPaymentCoordinator(PaymentCoordinator):
    """In-process gateway used for local runs and tests.

    The ``token`` in payment details drives the outcome: ``tok_decline``
    declines, ``tok_timeout`` times out, anything else is captured.
    Captures are idempotent per idempotency key.
    """

    DECLINE_TOKEN = 'tok_decline'
    TIMEOUT_TOKEN = 'tok_timeout'

    def __init__(self, failing_refunds: Optional[Set[str]] = None):
        self._lock = threading.Lock()
        self.captures: Dict[str, PaymentReceipt] = {}
        self.refunds: List[str] = []
        self.failing_refunds: Set[str] = set(failing_refunds or ())
        self._by_key: Dict[str, str] = {}

    def authorize_and_capture(self, amount, payment_details, idempotency_key=None):
        token = (payment_details or {}).get('token')
        if token == self.DECLINE_TOKEN:
            raise PaymentDeclined('card declined')
        if token == self.TIMEOUT_TOKEN:
            raise PaymentTimeout('payment gateway timed out')

        with self._lock:
            if idempotency_key and idempotency_key in self._by_key:
                return self.captures[self._by_key[idempotency_key]]
            receipt = PaymentReceipt(transaction_id=f"txn_{uuid.uuid4().hex}", amount=Decimal(amount))
            self.captures[receipt.transaction_id] = receipt
            if idempotency_key:
                self._by_key[idempotency_key] = receipt.transaction_id
        return receipt

    def refund(self, transaction_id):
        with self._lock:
            if transaction_id in self.failing_refunds or transaction_id not in self.captures:
                raise RefundFailed(f"refund rejected for {transaction_id}")
            self.refunds.append(transaction_id)


class HttpPaymentCoordinator(PaymentCoordinator):
    """JSON-over-HTTP client for an external payment gateway."""

    def __init__(self, base_url: str, timeout_seconds: float = 5, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def authorize_and_capture(self, amount, payment_details, idempotency_key=None):
        headers = {}
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key
        try:
            resp = self.session.post(
                f"{self.base_url}/charges",
                json={"amount": str(amount), "capture": True, "payment_details": payment_details or {}},
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning(f"Payment gateway unreachable: {e}")
            raise PaymentTimeout('payment gateway timed out') from e

        if resp.status_code == 402:
            reason = _error_message(resp) or 'card declined'
            raise PaymentDeclined(reason)
        if resp.status_code == 504:
            raise PaymentTimeout('payment gateway timed out')
        if not resp.ok:
            raise PaymentDeclined(f"payment gateway error ({resp.status_code})")

        # An unreadable reply leaves the charge outcome unknown
        try:
            body = resp.json()
            return PaymentReceipt(transaction_id=body['transaction_id'], amount=Decimal(str(body.get('amount', amount))))
        except (ValueError, KeyError, TypeError, AttributeError, InvalidOperation) as e:
            logger.warning(f"Unreadable payment gateway reply: {e}")
            raise PaymentTimeout('payment gateway returned an unreadable reply') from e

    def refund(self, transaction_id):
        try:
            resp = self.session.post(
                f"{self.base_url}/refunds",
                json={"transaction_id": transaction_id},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise RefundFailed(f"refund request failed: {e}") from e
        if not resp.ok:
            raise RefundFailed(_error_message(resp) or f"refund rejected ({resp.status_code})")


def _error_message(resp: requests.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get('error')
    return None
