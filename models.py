"""ORM model definitions describing the seat reservation schema."""

from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Enum, ForeignKey, Index, JSON, Uuid,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator
from datetime import datetime, timezone
import enum
import uuid

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, including on backends that store naive values (SQLite)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class SeatStatus(str, enum.Enum):
    """Per-seat occupancy persisted in the database."""
    FREE = 'free'
    HELD = 'held'
    BOOKED = 'booked'


class HoldStatus(str, enum.Enum):
    ACTIVE = 'active'
    CONFIRMED = 'confirmed'
    RELEASED = 'released'
    EXPIRED = 'expired'


class LedgerStatus(str, enum.Enum):
    """Status of a ledger entry; CANCELLED exists only here, holds stay CONFIRMED."""
    ACTIVE = 'active'
    CONFIRMED = 'confirmed'
    RELEASED = 'released'
    EXPIRED = 'expired'
    CANCELLED = 'cancelled'


class RefundStatus(str, enum.Enum):
    REFUNDED = 'refunded'
    FAILED = 'failed'


ledger_status_type = Enum(LedgerStatus, name='ledger_status_enum')


class Show(Base):
    __tablename__ = 'shows'

    show_id = Column(String, primary_key=True)
    total_seats = Column(Integer, nullable=False)
    available_seats = Column(Integer, nullable=False)
    seat_price = Column(Numeric(10, 2), nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)

    seats = relationship('Seat', back_populates='show', cascade='all, delete-orphan')
    holds = relationship('Hold', back_populates='show', cascade='all, delete-orphan')

    # Every inventory mutation bumps the version; a concurrent stale write raises StaleDataError
    __mapper_args__ = {'version_id_col': version}


class Seat(Base):
    __tablename__ = 'seats'

    show_id = Column(String, ForeignKey('shows.show_id', ondelete='CASCADE'), primary_key=True)
    seat_label = Column(String, primary_key=True)

    status = Column(Enum(SeatStatus, name='seat_status_enum'),
                    default=SeatStatus.FREE, nullable=False)
    hold_id = Column(Uuid(as_uuid=True))
    hold_expires_at = Column(UTCDateTime)

    show = relationship('Show', back_populates='seats')

    __table_args__ = (
        Index('idx_seats_status', 'show_id', 'status'),
        Index('idx_seats_hold', 'hold_id'),
    )


class Hold(Base):
    __tablename__ = 'holds'

    hold_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    show_id = Column(String, ForeignKey('shows.show_id', ondelete='CASCADE'), nullable=False)
    user_id = Column(String, nullable=False)
    seat_labels = Column(JSON, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(Enum(HoldStatus, name='hold_status_enum'),
                    default=HoldStatus.ACTIVE, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False)
    finalized_at = Column(UTCDateTime)

    show = relationship('Show', back_populates='holds')

    __table_args__ = (
        Index('idx_holds_status_expires', 'status', 'expires_at'),
        Index('idx_holds_show', 'show_id'),
    )


class LedgerEntry(Base):
    """Durable record of a hold and the booking it turns into, keyed by booking id (== hold id)."""
    __tablename__ = 'ledger_entries'

    booking_id = Column(Uuid(as_uuid=True), primary_key=True)
    user_id = Column(String, nullable=False)
    show_id = Column(String, nullable=False)
    seat_labels = Column(JSON, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(ledger_status_type, nullable=False)
    transaction_id = Column(String)
    refund_status = Column(Enum(RefundStatus, name='refund_status_enum'))
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)

    events = relationship('LedgerEvent', back_populates='entry', order_by='LedgerEvent.event_id')

    __table_args__ = (
        Index('idx_ledger_user', 'user_id', 'created_at'),
    )


class LedgerEvent(Base):
    """Append-only transition log row."""
    __tablename__ = 'ledger_events'

    event_id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Uuid(as_uuid=True), ForeignKey('ledger_entries.booking_id', ondelete='CASCADE'),
                        nullable=False)
    from_status = Column(ledger_status_type)
    to_status = Column(ledger_status_type, nullable=False)
    reason = Column(String)
    occurred_at = Column(UTCDateTime, default=utcnow)

    entry = relationship('LedgerEntry', back_populates='events')
