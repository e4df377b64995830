"""Reservation ledger: one entry per hold/booking plus an append-only log of its transitions."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import logging
import uuid

from errors import InvalidState
from models import Hold, LedgerEntry, LedgerEvent, LedgerStatus, RefundStatus

logger = logging.getLogger(__name__)

# Allowed ledger transitions; anything else is a programming error in the caller
TRANSITIONS = {
    LedgerStatus.ACTIVE: {LedgerStatus.CONFIRMED, LedgerStatus.RELEASED, LedgerStatus.EXPIRED},
    LedgerStatus.CONFIRMED: {LedgerStatus.CANCELLED},
}

BOOKING_STATUSES = (LedgerStatus.CONFIRMED, LedgerStatus.CANCELLED)


class ReservationLedger:

    def record_hold(self, session, hold: Hold, now: datetime) -> LedgerEntry:
        entry = LedgerEntry(
            booking_id=hold.hold_id,
            user_id=hold.user_id,
            show_id=hold.show_id,
            seat_labels=list(hold.seat_labels),
            total_amount=hold.total_amount,
            status=LedgerStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        session.add(entry)
        session.add(LedgerEvent(booking_id=hold.hold_id, from_status=None, to_status=LedgerStatus.ACTIVE,
                                reason='hold created', occurred_at=now))
        return entry

    def transition(self, session, booking_id: uuid.UUID, to_status: LedgerStatus, now: datetime,
                   reason: Optional[str] = None, transaction_id: Optional[str] = None) -> LedgerEntry:
        entry = session.get(LedgerEntry, booking_id)
        if entry is None:
            raise InvalidState(f"no ledger entry for {booking_id}")
        if to_status not in TRANSITIONS.get(entry.status, ()):
            raise InvalidState(f"cannot move booking from {entry.status.value} to {to_status.value}",
                               details={"status": entry.status.value})

        session.add(LedgerEvent(booking_id=booking_id, from_status=entry.status, to_status=to_status,
                                reason=reason, occurred_at=now))
        entry.status = to_status
        entry.updated_at = now
        if transaction_id is not None:
            entry.transaction_id = transaction_id
        logger.info(f"Booking {booking_id}: -> {to_status.value} ({reason or 'no reason'})")
        return entry

    def record_refund(self, session, booking_id: uuid.UUID, refund_status: RefundStatus, now: datetime,
                      reason: Optional[str] = None) -> Optional[LedgerEntry]:
        entry = session.get(LedgerEntry, booking_id)
        if entry is None:
            return None
        entry.refund_status = refund_status
        entry.updated_at = now
        session.add(LedgerEvent(booking_id=booking_id, from_status=entry.status, to_status=entry.status,
                                reason=reason or f"refund {refund_status.value}", occurred_at=now))
        return entry

    def get(self, session, booking_id: uuid.UUID) -> Optional[LedgerEntry]:
        return session.get(LedgerEntry, booking_id)

    def for_user(self, session, user_id: str,
                 statuses: Iterable[LedgerStatus] = BOOKING_STATUSES) -> List[LedgerEntry]:
        return session.query(LedgerEntry).filter(
            LedgerEntry.user_id == user_id,
            LedgerEntry.status.in_(list(statuses))
        ).order_by(LedgerEntry.created_at.desc()).all()

    def history(self, session, booking_id: uuid.UUID) -> List[LedgerEvent]:
        return session.query(LedgerEvent).filter(
            LedgerEvent.booking_id == booking_id
        ).order_by(LedgerEvent.event_id).all()


def booking_view(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "booking_id": str(entry.booking_id),
        "user_id": entry.user_id,
        "show_id": entry.show_id,
        "seat_labels": list(entry.seat_labels),
        "total_amount": str(entry.total_amount),
        "status": entry.status.value,
        "transaction_id": entry.transaction_id,
        "refund_status": entry.refund_status.value if entry.refund_status else None,
        "created_at": entry.created_at.isoformat(),
        "updated_at": entry.updated_at.isoformat(),
    }


def event_view(event: LedgerEvent) -> Dict[str, Any]:
    return {
        "from_status": event.from_status.value if event.from_status else None,
        "to_status": event.to_status.value,
        "reason": event.reason,
        "occurred_at": event.occurred_at.isoformat(),
    }
