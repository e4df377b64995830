"""Reservation engine: the per-show serialized state machine behind every booking.

A booking goes through two critical sections on its show. The first grants an
ACTIVE hold (seats HELD). Payment then runs with no lock held. The second
critical section confirms the hold (seats BOOKED) or releases it (seats FREE).
Every public method returns a ``(result, error)`` pair where exactly one side
is None and ``error`` is a :class:`errors.ReservationError`.
"""

from collections import defaultdict
from contextlib import ExitStack
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import uuid

from catalog import Catalog, StaticCatalog
from config import Settings
from database_manager import DatabaseManager
from errors import (
    AlreadyFinal, HoldExpired, HoldNotFound, InvalidRequest, InvalidSeats, PaymentError,
    PaymentTimeout, RefundFailed, ReservationError, ShowNotFound,
)
from inventory import SeatInventory, hold_view, normalize_labels
from ledger import BOOKING_STATUSES, ReservationLedger, booking_view, event_view
from locks import ShowLockRegistry
from models import Hold, HoldStatus, LedgerStatus, RefundStatus, Show, utcnow
from payment import PaymentCoordinator, PaymentReceipt

logger = logging.getLogger(__name__)

Result = Tuple[Optional[Any], Optional[ReservationError]]

# Upper bound for holds requested directly through the engine
MAX_HOLD_SECONDS = 7 * 24 * 3600


class ReservationEngine:

    def __init__(
        self,
        db: DatabaseManager,
        payments: PaymentCoordinator,
        catalog: Optional[Catalog] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[ShowLockRegistry] = None,
    ):
        self.db = db
        self.payments = payments
        self.catalog = catalog or StaticCatalog()
        self.settings = settings or Settings()
        self.clock = clock
        self.locks = locks or ShowLockRegistry()
        self.inventory = SeatInventory()
        self.ledger = ReservationLedger()

    # Show setup

    def initialize_show(self, show_id: str, seat_labels: Any, seat_price: Any = None) -> Result:
        """Create a show's inventory with every seat FREE."""
        if not isinstance(show_id, str) or not show_id.strip():
            return None, InvalidRequest("show_id must be a non-empty string")
        try:
            labels = normalize_labels(seat_labels)
        except ValueError as e:
            return None, InvalidSeats(str(e))
        try:
            price = self.settings.default_seat_price if seat_price is None else Decimal(str(seat_price))
        except InvalidOperation:
            return None, InvalidRequest("seat_price must be a decimal amount")
        if not price.is_finite():
            return None, InvalidRequest("seat_price must be a decimal amount")
        if price < 0:
            return None, InvalidRequest("seat_price must not be negative")

        try:
            with self.locks.hold(show_id):
                with self.db.get_session() as session:
                    show = self.inventory.initialize_show(session, show_id, labels, price, self.clock())
                    result = {
                        "show_id": show.show_id,
                        "total_seats": show.total_seats,
                        "available_seats": show.available_seats,
                        "seat_price": str(show.seat_price),
                    }
        except ReservationError as e:
            return None, e

        logger.info(f"Initialized show {show_id} with {len(labels)} seats")
        return result, None

    def open_show(self, show_id: str) -> Result:
        """Initialize a show's inventory from the catalog's seat layout."""
        info = self.catalog.get_show(show_id)
        if info is None:
            return None, ShowNotFound("show not found in catalog", details={"show_id": show_id})
        return self.initialize_show(show_id, info.seat_labels, info.seat_price)

    # Booking lifecycle

    def request_booking(self, show_id: str, user_id: str, seat_labels: Any,
                        hold_duration_seconds: Optional[int] = None) -> Result:
        """Hold all requested seats for the user, or fail without holding any."""
        labels, error = self._validate_request(show_id, user_id, seat_labels)
        if error:
            return None, error

        hold_seconds = self.settings.hold_duration_seconds if hold_duration_seconds is None else hold_duration_seconds
        if isinstance(hold_seconds, bool) or not isinstance(hold_seconds, int) or hold_seconds <= 0:
            return None, InvalidRequest("hold duration must be a positive number of seconds")
        if hold_seconds > MAX_HOLD_SECONDS:
            return None, InvalidRequest(f"hold duration must not exceed {MAX_HOLD_SECONDS} seconds")

        result = None
        try:
            with self.locks.hold(show_id):
                with self.db.get_session() as session:
                    show = self.inventory.lock_show(session, show_id)
                    now = self.clock()
                    for stale in self.inventory.expired_holds(session, show_id, now):
                        self._expire(session, show, stale, now)
                    try:
                        hold = self.inventory.check_and_reserve(session, show, labels, user_id, now, hold_seconds)
                    except ReservationError as e:
                        # Commit any lazily expired holds, report the contention loss
                        error = e
                    else:
                        self.ledger.record_hold(session, hold, now)
                        result = hold_view(hold)
        except ReservationError as e:
            return None, e

        if error:
            logger.info(f"Hold rejected on {show_id} for {user_id}: {error.message}")
            return None, error
        logger.info(f"Hold created: {show_id}, hold_id={result['hold_id']}, seats={labels}")
        return result, None

    def confirm_booking(self, hold_id: Any, payment_details: Optional[Dict[str, Any]] = None) -> Result:
        """Capture payment for an ACTIVE hold and turn it into a CONFIRMED booking."""
        hold_uuid = _parse_id(hold_id)
        show_id = self._show_of_hold(hold_uuid) if hold_uuid else None
        if show_id is None:
            return None, HoldNotFound("hold not found", details={"hold_id": str(hold_id)})

        # Phase 1: make sure the hold is still confirmable and price it
        with self.locks.hold(show_id):
            with self.db.get_session() as session:
                show = self.inventory.lock_show(session, show_id)
                hold = session.get(Hold, hold_uuid, with_for_update=True)
                now = self.clock()
                error = self._final_state_error(hold, hold_uuid)
                if error is None and now > hold.expires_at:
                    self._expire(session, show, hold, now)
                    error = HoldExpired("hold expired", details={"hold_id": str(hold_uuid)})
                amount = hold.total_amount if error is None else None
        if error:
            return None, error

        # Payment runs outside the show's critical section
        receipt, payment_error = self._capture(amount, payment_details, str(hold_uuid))

        # Phase 2: commit the outcome
        result = None
        refund_needed = False
        with self.locks.hold(show_id):
            with self.db.get_session() as session:
                show = self.inventory.lock_show(session, show_id)
                hold = session.get(Hold, hold_uuid, with_for_update=True)
                now = self.clock()
                if payment_error is not None:
                    if hold is not None and hold.status == HoldStatus.ACTIVE:
                        self.inventory.release(session, show, hold, now)
                        self.ledger.transition(session, hold_uuid, LedgerStatus.RELEASED, now,
                                               reason=payment_error.code.lower())
                    error = payment_error
                elif hold is None or hold.status != HoldStatus.ACTIVE:
                    error = self._final_state_error(hold, hold_uuid)
                    entry = self.ledger.get(session, hold_uuid)
                    # A concurrent confirm of the same hold already recorded this capture
                    refund_needed = entry is None or entry.transaction_id != receipt.transaction_id
                elif now > hold.expires_at:
                    self._expire(session, show, hold, now)
                    error = HoldExpired("hold expired while payment was processed",
                                        details={"hold_id": str(hold_uuid)})
                    refund_needed = True
                else:
                    self.inventory.confirm(session, show, hold, now)
                    entry = self.ledger.transition(session, hold_uuid, LedgerStatus.CONFIRMED, now,
                                                   reason='payment captured',
                                                   transaction_id=receipt.transaction_id)
                    result = booking_view(entry)

        if refund_needed:
            self._refund_orphan_capture(hold_uuid, receipt)
        if error:
            logger.warning(f"Confirm failed for hold {hold_uuid}: {error.code} ({error.message})")
            return None, error
        logger.info(f"Booking confirmed: {show_id}, booking_id={result['booking_id']}")
        return result, None

    def cancel_booking(self, booking_id: Any) -> Result:
        """Release an ACTIVE hold, or cancel a CONFIRMED booking and refund it."""
        return self._cancel(booking_id, allow_confirmed=True)

    def release_hold(self, hold_id: Any) -> Result:
        """Release an ACTIVE hold early; confirmed bookings must go through cancel_booking."""
        return self._cancel(hold_id, allow_confirmed=False)

    def sweep_expired(self) -> int:
        """Expire every ACTIVE hold past its expiry, one show critical section at a time."""
        now = self.clock()
        with self.db.get_session() as session:
            rows = session.query(Hold.show_id, Hold.hold_id).filter(
                Hold.status == HoldStatus.ACTIVE,
                Hold.expires_at < now
            ).all()

        by_show: Dict[str, List[uuid.UUID]] = defaultdict(list)
        for show_id, hold_id in rows:
            by_show[show_id].append(hold_id)

        count = 0
        for show_id, hold_ids in by_show.items():
            with self.locks.hold(show_id):
                with self.db.get_session() as session:
                    show = self.inventory.lock_show(session, show_id)
                    now = self.clock()
                    holds = session.query(Hold).filter(Hold.hold_id.in_(hold_ids)).with_for_update().all()
                    for hold in holds:
                        # Re-check: a confirm or release may have won the race
                        if hold.status == HoldStatus.ACTIVE and hold.expires_at < now:
                            self._expire(session, show, hold, now)
                            count += 1

        if count > 0:
            logger.info(f"Expired {count} holds")
        return count

    # Reads

    def get_hold(self, hold_id: Any) -> Result:
        hold_uuid = _parse_id(hold_id)
        with self.db.get_session() as session:
            hold = session.get(Hold, hold_uuid) if hold_uuid else None
            if hold is None:
                return None, HoldNotFound("hold not found", details={"hold_id": str(hold_id)})
            return hold_view(hold), None

    def get_booking(self, booking_id: Any) -> Result:
        booking_uuid = _parse_id(booking_id)
        with self.db.get_session() as session:
            entry = self.ledger.get(session, booking_uuid) if booking_uuid else None
            if entry is None or entry.status not in BOOKING_STATUSES:
                return None, HoldNotFound("booking not found", details={"booking_id": str(booking_id)})
            return booking_view(entry), None

    def list_bookings_for_user(self, user_id: str) -> Result:
        if not isinstance(user_id, str) or not user_id.strip():
            return None, InvalidRequest("user_id must be a non-empty string")
        with self.db.get_session() as session:
            return [booking_view(entry) for entry in self.ledger.for_user(session, user_id.strip())], None

    def booking_history(self, booking_id: Any) -> Result:
        booking_uuid = _parse_id(booking_id)
        with self.db.get_session() as session:
            if booking_uuid is None or self.ledger.get(session, booking_uuid) is None:
                return None, HoldNotFound("booking not found", details={"booking_id": str(booking_id)})
            return [event_view(event) for event in self.ledger.history(session, booking_uuid)], None

    def get_seat_status(self, show_id: str) -> Result:
        with self.db.get_session() as session:
            status = self.inventory.seat_status(session, show_id)
        if status is None:
            return None, ShowNotFound("show not found", details={"show_id": show_id})
        return status, None

    def verify_invariants(self, show_id: str) -> Result:
        with self.locks.hold(show_id):
            with self.db.get_session() as session:
                report = self.inventory.verify_invariants(session, show_id)
        if report is None:
            return None, ShowNotFound("show not found", details={"show_id": show_id})
        return report, None

    # Administration

    def reset_all(self) -> Result:
        """Return every show to all-FREE and clear holds and the ledger."""
        with self.db.get_session() as session:
            show_ids = sorted(show_id for (show_id,) in session.query(Show.show_id).all())

        with ExitStack() as stack:
            for show_id in show_ids:
                stack.enter_context(self.locks.hold(show_id))
            success, result = self.db.reset_all()
        if not success:
            return None, ReservationError("reset failed", details=result)
        return result, None

    # Internals

    def _validate_request(self, show_id: str, user_id: str, seat_labels: Any):
        if not isinstance(user_id, str) or not user_id.strip():
            return None, InvalidRequest("user_id must be a non-empty string")
        try:
            labels = normalize_labels(seat_labels)
        except ValueError as e:
            return None, InvalidSeats(str(e))

        with self.db.get_session() as session:
            known = self.inventory.seat_labels(session, show_id)
        if known is None:
            return None, ShowNotFound("show not found", details={"show_id": show_id})
        unknown = [label for label in labels if label not in known]
        if unknown:
            return None, InvalidSeats("seat labels do not belong to this show", details={"unknown_seats": unknown})
        return labels, None

    def _show_of_hold(self, hold_uuid: uuid.UUID) -> Optional[str]:
        with self.db.get_session() as session:
            return session.query(Hold.show_id).filter(Hold.hold_id == hold_uuid).scalar()

    def _expire(self, session, show, hold: Hold, now: datetime) -> None:
        self.inventory.release(session, show, hold, now, final_status=HoldStatus.EXPIRED)
        self.ledger.transition(session, hold.hold_id, LedgerStatus.EXPIRED, now, reason='hold expired')

    def _final_state_error(self, hold: Optional[Hold], hold_uuid: uuid.UUID) -> Optional[ReservationError]:
        if hold is None:
            return HoldNotFound("hold not found", details={"hold_id": str(hold_uuid)})
        if hold.status == HoldStatus.ACTIVE:
            return None
        if hold.status == HoldStatus.EXPIRED:
            return HoldExpired("hold expired", details={"hold_id": str(hold.hold_id)})
        return AlreadyFinal(f"hold is already {hold.status.value}",
                            details={"hold_id": str(hold.hold_id), "status": hold.status.value})

    def _capture(self, amount: Decimal, payment_details: Optional[Dict[str, Any]], idempotency_key: str):
        """Charge the hold's amount, retrying timeouts up to the configured attempt count."""
        last_error: Optional[PaymentError] = None
        for attempt in range(1, self.settings.payment_max_attempts + 1):
            try:
                return self.payments.authorize_and_capture(amount, payment_details, idempotency_key=idempotency_key), None
            except PaymentTimeout as e:
                logger.warning(f"Payment attempt {attempt} for {idempotency_key} timed out")
                last_error = e
            except PaymentError as e:
                return None, e
        return None, last_error

    def _refund_orphan_capture(self, hold_uuid: uuid.UUID, receipt: PaymentReceipt) -> None:
        try:
            self.payments.refund(receipt.transaction_id)
            logger.info(f"Refunded capture {receipt.transaction_id} for unconfirmable hold {hold_uuid}")
        except RefundFailed as e:
            logger.error(f"Refund of {receipt.transaction_id} for hold {hold_uuid} failed: {e.message}")

    def _cancel(self, booking_id: Any, allow_confirmed: bool) -> Result:
        booking_uuid = _parse_id(booking_id)
        show_id = self._show_of_hold(booking_uuid) if booking_uuid else None
        if show_id is None:
            return None, HoldNotFound("booking not found", details={"booking_id": str(booking_id)})

        result = None
        error = None
        transaction_id = None
        with self.locks.hold(show_id):
            with self.db.get_session() as session:
                show = self.inventory.lock_show(session, show_id)
                hold = session.get(Hold, booking_uuid, with_for_update=True)
                entry = self.ledger.get(session, booking_uuid)
                now = self.clock()
                if hold is None or entry is None:
                    error = HoldNotFound("booking not found", details={"booking_id": str(booking_uuid)})
                elif entry.status == LedgerStatus.ACTIVE:
                    self.inventory.release(session, show, hold, now)
                    entry = self.ledger.transition(session, booking_uuid, LedgerStatus.RELEASED, now,
                                                   reason='released by user')
                    result = hold_view(hold)
                elif entry.status == LedgerStatus.CONFIRMED and allow_confirmed:
                    self.inventory.cancel_booked(session, show, hold, now)
                    entry = self.ledger.transition(session, booking_uuid, LedgerStatus.CANCELLED, now,
                                                   reason='cancelled by user')
                    transaction_id = entry.transaction_id
                    result = booking_view(entry)
                else:
                    error = AlreadyFinal(f"booking is already {entry.status.value}",
                                         details={"booking_id": str(booking_uuid), "status": entry.status.value})

        if error:
            return None, error
        if transaction_id:
            result = self._refund_cancelled(booking_uuid, transaction_id)
        logger.info(f"Cancelled {booking_uuid} on {show_id}")
        return result, None

    def _refund_cancelled(self, booking_uuid: uuid.UUID, transaction_id: str) -> Dict[str, Any]:
        """Refund a cancelled booking; a failed refund never reverts the cancellation."""
        try:
            self.payments.refund(transaction_id)
            refund_status, reason = RefundStatus.REFUNDED, 'refund completed'
        except RefundFailed as e:
            logger.error(f"Refund failed for booking {booking_uuid} ({transaction_id}): {e.message}")
            refund_status, reason = RefundStatus.FAILED, f"refund failed: {e.message}"

        with self.db.get_session() as session:
            entry = self.ledger.record_refund(session, booking_uuid, refund_status, self.clock(), reason=reason)
            return booking_view(entry)


def _parse_id(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (ValueError, AttributeError):
        return None
