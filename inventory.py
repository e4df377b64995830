"""Seat inventory: per-show seat occupancy and the hold transitions that change it.

Every mutating method here expects to run inside a session opened by the
reservation engine while it holds the show's critical section, with the
show row already loaded through ``lock_show``.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set
import logging
import uuid

from sqlalchemy import func
from sqlalchemy.orm.attributes import flag_modified

from errors import AlreadyFinal, HoldExpired, InvalidState, SeatUnavailable, ShowAlreadyExists, ShowNotFound
from models import Hold, HoldStatus, Seat, SeatStatus, Show

logger = logging.getLogger(__name__)


class SeatInventory:

    def initialize_show(self, session, show_id: str, seat_labels: List[str], seat_price: Decimal,
                        now: datetime) -> Show:
        """Create a show record along with its seat map, all seats FREE."""
        if session.get(Show, show_id) is not None:
            raise ShowAlreadyExists("show already exists", details={"show_id": show_id})

        show = Show(
            show_id=show_id,
            total_seats=len(seat_labels),
            available_seats=len(seat_labels),
            seat_price=seat_price,
            created_at=now,
            updated_at=now,
        )
        session.add(show)
        session.add_all([
            Seat(show_id=show_id, seat_label=label, status=SeatStatus.FREE)
            for label in seat_labels
        ])
        return show

    def lock_show(self, session, show_id: str) -> Show:
        """Load the show row for update; on PostgreSQL this is a row-level lock."""
        show = session.query(Show).filter_by(show_id=show_id).with_for_update().first()
        if show is None:
            raise ShowNotFound("show not found", details={"show_id": show_id})
        return show

    def seat_labels(self, session, show_id: str) -> Optional[Set[str]]:
        """The show's seat labels, or None if the show does not exist."""
        if session.get(Show, show_id) is None:
            return None
        rows = session.query(Seat.seat_label).filter(Seat.show_id == show_id).all()
        return {label for (label,) in rows}

    def check_and_reserve(self, session, show: Show, seat_labels: List[str], user_id: str,
                          now: datetime, hold_seconds: int) -> Hold:
        """Hold every requested seat or none of them."""
        locked_seats = session.query(Seat).filter(
            Seat.show_id == show.show_id,
            Seat.seat_label.in_(seat_labels)
        ).with_for_update().all()

        found = {seat.seat_label for seat in locked_seats}
        unavailable = [seat.seat_label for seat in locked_seats if seat.status != SeatStatus.FREE]
        unavailable.extend(label for label in seat_labels if label not in found)
        if unavailable:
            logger.debug(f"Seats unavailable on {show.show_id}: {unavailable}")
            raise SeatUnavailable(unavailable)

        expires_at = now + timedelta(seconds=hold_seconds)
        hold = Hold(
            hold_id=uuid.uuid4(),
            show_id=show.show_id,
            user_id=user_id,
            seat_labels=list(seat_labels),
            total_amount=Decimal(show.seat_price) * len(seat_labels),
            status=HoldStatus.ACTIVE,
            created_at=now,
            expires_at=expires_at,
        )
        session.add(hold)

        for seat in locked_seats:
            seat.status = SeatStatus.HELD
            seat.hold_id = hold.hold_id
            seat.hold_expires_at = expires_at

        show.available_seats -= len(locked_seats)
        self._touch(show, now)
        return hold

    def release(self, session, show: Show, hold: Hold, now: datetime,
                final_status: HoldStatus = HoldStatus.RELEASED) -> int:
        """Return an ACTIVE hold's seats to FREE and finalize the hold as RELEASED or EXPIRED."""
        if hold.status != HoldStatus.ACTIVE:
            raise AlreadyFinal(f"hold is already {hold.status.value}", details={"status": hold.status.value})

        freed = self._free_seats(session, show, hold, SeatStatus.HELD)
        hold.status = final_status
        hold.finalized_at = now
        self._touch(show, now)
        return freed

    def confirm(self, session, show: Show, hold: Hold, now: datetime) -> None:
        """Make an ACTIVE, unexpired hold's seats permanently BOOKED."""
        if hold.status != HoldStatus.ACTIVE:
            raise InvalidState(f"hold is {hold.status.value}", details={"status": hold.status.value})
        if now > hold.expires_at:
            raise HoldExpired("hold expired", details={"expires_at": hold.expires_at.isoformat()})

        for seat in self._owned_seats(session, show, hold, SeatStatus.HELD):
            seat.status = SeatStatus.BOOKED
            seat.hold_expires_at = None

        hold.status = HoldStatus.CONFIRMED
        hold.finalized_at = now
        self._touch(show, now)

    def cancel_booked(self, session, show: Show, hold: Hold, now: datetime) -> int:
        """Compensating release of a confirmed hold's BOOKED seats."""
        if hold.status != HoldStatus.CONFIRMED:
            raise InvalidState(f"hold is {hold.status.value}", details={"status": hold.status.value})

        freed = self._free_seats(session, show, hold, SeatStatus.BOOKED)
        self._touch(show, now)
        return freed

    def expired_holds(self, session, show_id: str, now: datetime) -> List[Hold]:
        return session.query(Hold).filter(
            Hold.show_id == show_id,
            Hold.status == HoldStatus.ACTIVE,
            Hold.expires_at < now
        ).with_for_update().all()

    def seat_status(self, session, show_id: str) -> Optional[Dict[str, Any]]:
        """Return booking aggregates and per-seat details for the given show."""
        show = session.get(Show, show_id)
        if show is None:
            return None

        counts = session.query(
            Seat.status,
            func.count(Seat.seat_label)
        ).filter(
            Seat.show_id == show_id
        ).group_by(Seat.status).all()

        count_dict = {SeatStatus.FREE: 0, SeatStatus.HELD: 0, SeatStatus.BOOKED: 0}
        for status, count in counts:
            count_dict[status] = count

        seats = session.query(Seat).filter(Seat.show_id == show_id).order_by(Seat.seat_label).all()

        seats_detail = []
        for seat in seats:
            detail = {
                "seat_label": seat.seat_label,
                "status": seat.status.value
            }
            if seat.status == SeatStatus.HELD and seat.hold_expires_at:
                detail["hold_expires_at"] = seat.hold_expires_at.isoformat()
            seats_detail.append(detail)

        return {
            "show_id": show.show_id,
            "total_seats": show.total_seats,
            "available_seats": show.available_seats,
            "free_seats": count_dict[SeatStatus.FREE],
            "held_seats": count_dict[SeatStatus.HELD],
            "booked_seats": count_dict[SeatStatus.BOOKED],
            "seat_price": str(show.seat_price),
            "version": show.version,
            "seats": seats_detail,
            "invariants_valid": show.available_seats == count_dict[SeatStatus.FREE],
        }

    def verify_invariants(self, session, show_id: str) -> Optional[Dict[str, Any]]:
        """Recompute the occupancy invariants from scratch and list every violation found."""
        show = session.get(Show, show_id)
        if show is None:
            return None

        problems: List[str] = []
        seats = session.query(Seat).filter(Seat.show_id == show_id).all()
        holds = {
            hold.hold_id: hold
            for hold in session.query(Hold).filter(
                Hold.show_id == show_id,
                Hold.status.in_([HoldStatus.ACTIVE, HoldStatus.CONFIRMED])
            )
        }

        free = sum(1 for seat in seats if seat.status == SeatStatus.FREE)
        if show.available_seats != free:
            problems.append(f"available_seats={show.available_seats} but {free} seats are free")
        if not 0 <= show.available_seats <= show.total_seats:
            problems.append(f"available_seats={show.available_seats} outside 0..{show.total_seats}")

        expected_owner = {SeatStatus.HELD: HoldStatus.ACTIVE, SeatStatus.BOOKED: HoldStatus.CONFIRMED}
        for seat in seats:
            if seat.status == SeatStatus.FREE:
                if seat.hold_id is not None:
                    problems.append(f"{seat.seat_label} is free but owned by {seat.hold_id}")
                continue
            owner = holds.get(seat.hold_id)
            if owner is None or owner.status != expected_owner[seat.status]:
                problems.append(f"{seat.seat_label} is {seat.status.value} without a matching hold")
            elif seat.seat_label not in owner.seat_labels:
                problems.append(f"{seat.seat_label} is not listed by its hold {owner.hold_id}")

        by_label = {seat.seat_label: seat for seat in seats}
        for hold in holds.values():
            if hold.status != HoldStatus.ACTIVE:
                continue
            for label in hold.seat_labels:
                seat = by_label.get(label)
                if seat is None or seat.hold_id != hold.hold_id or seat.status != SeatStatus.HELD:
                    problems.append(f"active hold {hold.hold_id} does not own {label}")

        return {"show_id": show_id, "valid": not problems, "problems": problems}

    def _owned_seats(self, session, show: Show, hold: Hold, status: SeatStatus) -> List[Seat]:
        return session.query(Seat).filter(
            Seat.show_id == show.show_id,
            Seat.seat_label.in_(hold.seat_labels),
            Seat.hold_id == hold.hold_id,
            Seat.status == status
        ).with_for_update().all()

    def _free_seats(self, session, show: Show, hold: Hold, status: SeatStatus) -> int:
        seats = self._owned_seats(session, show, hold, status)
        for seat in seats:
            seat.status = SeatStatus.FREE
            seat.hold_id = None
            seat.hold_expires_at = None
        show.available_seats += len(seats)
        return len(seats)

    def _touch(self, show: Show, now: datetime) -> None:
        # Forces an UPDATE of the show row (bumping its version) even when nothing else changed
        show.updated_at = now
        flag_modified(show, "updated_at")


def hold_view(hold: Hold) -> Dict[str, Any]:
    return {
        "hold_id": str(hold.hold_id),
        "show_id": hold.show_id,
        "user_id": hold.user_id,
        "seat_labels": list(hold.seat_labels),
        "total_amount": str(hold.total_amount),
        "status": hold.status.value,
        "created_at": hold.created_at.isoformat(),
        "expires_at": hold.expires_at.isoformat(),
        "finalized_at": hold.finalized_at.isoformat() if hold.finalized_at else None,
    }


def normalize_labels(seat_labels: Any) -> List[str]:
    """Strip labels and reject anything that is not a non-empty list of distinct, non-blank strings.

    Raises ValueError with a message suitable for an InvalidSeats failure.
    """
    if not isinstance(seat_labels, (list, tuple)):
        raise ValueError("seat_labels must be a non-empty list of strings")

    normalized: List[str] = []
    for seat in seat_labels:
        if not isinstance(seat, str):
            raise ValueError("each seat label must be a string")
        trimmed = seat.strip()
        if not trimmed:
            raise ValueError("seat labels must not be empty strings")
        normalized.append(trimmed)

    if not normalized:
        raise ValueError("seat_labels must contain at least one seat")
    if len(set(normalized)) != len(normalized):
        raise ValueError("seat_labels must not contain duplicates")
    return normalized
