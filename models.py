"""ORM model definitions describing the reservation engine schema."""

from sqlalchemy import (Boolean, Column, DateTime, Enum, ForeignKey, Index, Integer, JSON,
                        Numeric, String, Uuid)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import uuid

from domain import HoldState, PaymentMethod, PaymentStatus, ReservationStatus, SeatStatus

Base = declarative_base()


def _now():
    return datetime.now(timezone.utc)


class Screening(Base):
    __tablename__ = 'screenings'

    screening_id = Column(String, primary_key=True)
    film_title = Column(String, nullable=False, default='')
    room = Column(String, nullable=False, default='')
    starts_at = Column(DateTime(timezone=True))
    total_seats = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    rows = Column(JSON, nullable=False, default=list)
    seats_per_row = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_now)

    seats = relationship('Seat', back_populates='screening', cascade='all, delete-orphan')
    holds = relationship('Hold', back_populates='screening', cascade='all, delete-orphan')
    reservations = relationship('Reservation', back_populates='screening', cascade='all, delete-orphan')


class Seat(Base):
    __tablename__ = 'seats'

    screening_id = Column(String, ForeignKey('screenings.screening_id', ondelete='CASCADE'), primary_key=True)
    row = Column(String, primary_key=True)
    number = Column(Integer, primary_key=True)

    status = Column(Enum(SeatStatus, name='seat_status_enum', values_callable=lambda e: [m.value for m in e]),
                    default=SeatStatus.AVAILABLE, nullable=False)
    hold_id = Column(Uuid(as_uuid=True))

    screening = relationship('Screening', back_populates='seats')

    __table_args__ = (
        Index('idx_seats_status', 'screening_id', 'status'),
        Index('idx_seats_hold', 'hold_id'),
    )


class Hold(Base):
    __tablename__ = 'holds'

    hold_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    screening_id = Column(String, ForeignKey('screenings.screening_id', ondelete='CASCADE'), nullable=False)
    # [[row, number], ...] in acquisition order
    seat_ids = Column(JSON, nullable=False)
    holder_id = Column(String, nullable=False)
    state = Column(Enum(HoldState, name='hold_state_enum', values_callable=lambda e: [m.value for m in e]),
                   default=HoldState.ACTIVE, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)

    screening = relationship('Screening', back_populates='holds')

    __table_args__ = (
        Index('idx_holds_state_expires', 'state', 'expires_at'),
        Index('idx_holds_screening', 'screening_id'),
    )


class Reservation(Base):
    __tablename__ = 'reservations'

    reservation_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    screening_id = Column(String, ForeignKey('screenings.screening_id', ondelete='CASCADE'), nullable=False)
    user_id = Column(String, nullable=False)
    seat_ids = Column(JSON, nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    status = Column(Enum(ReservationStatus, name='reservation_status_enum',
                         values_callable=lambda e: [m.value for m in e]),
                    default=ReservationStatus.PENDING, nullable=False)
    hold_id = Column(Uuid(as_uuid=True))
    confirmation_code = Column(String(13), nullable=False, unique=True)
    reservation_code = Column(String(10), nullable=False)
    in_flight = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_now)

    screening = relationship('Screening', back_populates='reservations')
    payment = relationship('Payment', back_populates='reservation', uselist=False, cascade='all, delete-orphan')

    __table_args__ = (
        Index('idx_reservations_screening_status', 'screening_id', 'status'),
        Index('idx_reservations_hold', 'hold_id'),
        Index('idx_reservations_pending_created', 'status', 'created_at'),
    )


class Payment(Base):
    __tablename__ = 'payments'

    reservation_id = Column(Uuid(as_uuid=True), ForeignKey('reservations.reservation_id', ondelete='CASCADE'),
                            primary_key=True)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(Enum(PaymentStatus, name='payment_status_enum', values_callable=lambda e: [m.value for m in e]),
                    default=PaymentStatus.PENDING, nullable=False)
    payment_method = Column(Enum(PaymentMethod, name='payment_method_enum',
                                 values_callable=lambda e: [m.value for m in e]))
    transaction_id = Column(String)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    reservation = relationship('Reservation', back_populates='payment')
