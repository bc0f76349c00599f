"""ORM models shared by every service.

Status values are stored as plain strings; the classes below only group the
allowed values together.
"""

from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, Float, ForeignKey, Integer,
    String, Text, Time, func,
)
from sqlalchemy.orm import relationship

from shared.db import Base


class AvailabilityStatus:
    AVAILABLE = 'AVAILABLE'
    OCCUPIED = 'OCCUPIED'
    MAINTENANCE = 'MAINTENANCE'
    RESERVED = 'RESERVED'
    ALL = frozenset({AVAILABLE, OCCUPIED, MAINTENANCE, RESERVED})


class BookingStatus:
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'
    OPEN = frozenset({PENDING, CONFIRMED})
    CLOSED = frozenset({COMPLETED, CANCELLED})


class PaymentStatus:
    PENDING = 'PENDING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    REFUNDED = 'REFUNDED'


class SeatingTypeName:
    HOT_DESK = 'HOT_DESK'
    DEDICATED_DESK = 'DEDICATED_DESK'
    CUBICLE = 'CUBICLE'
    MEETING_ROOM = 'MEETING_ROOM'
    DAILY_PASS = 'DAILY_PASS'
    ALL = frozenset({HOT_DESK, DEDICATED_DESK, CUBICLE, MEETING_ROOM, DAILY_PASS})


class AdminRole:
    SUPER_ADMIN = 'super_admin'
    BRANCH_ADMIN = 'branch_admin'
    ALL = frozenset({SUPER_ADMIN, BRANCH_ADMIN})


class TicketStatus:
    NEW = 'new'
    ASSIGNED = 'assigned'
    IN_PROGRESS = 'in_progress'
    CLOSED = 'closed'
    REOPENED = 'reopened'
    ALL = frozenset({NEW, ASSIGNED, IN_PROGRESS, CLOSED, REOPENED})


class TicketCategory:
    ALL = frozenset({
        'internet_issue', 'power_outage', 'seat_issue', 'booking_problem',
        'meeting_room_issue', 'cleanliness', 'payment_issue', 'other',
    })


class Branch(Base):
    __tablename__ = 'branches'

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)
    address = Column(String(255), nullable=False)
    location = Column(String(120), nullable=False)
    latitude = Column(Float)
    longitude = Column(Float)
    opening_time = Column(Time, nullable=False)
    closing_time = Column(Time, nullable=False)
    amenities = Column(JSON)
    capacity = Column(Integer)
    short_code = Column(String(10), unique=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    seats = relationship('Seat', back_populates='branch', cascade='all, delete-orphan', passive_deletes=True)


class SeatingType(Base):
    __tablename__ = 'seating_types'

    id = Column(Integer, primary_key=True)
    name = Column(String(30), unique=True, nullable=False)
    description = Column(Text)
    hourly_rate = Column(Float, default=0, nullable=False)
    daily_rate = Column(Float, default=0, nullable=False)
    weekly_rate = Column(Float, default=0, nullable=False)
    monthly_rate = Column(Float, default=0, nullable=False)
    is_hourly = Column(Boolean, default=False, nullable=False)
    min_booking_duration = Column(Integer, default=1, nullable=False)
    min_seats = Column(Integer, default=1, nullable=False)
    short_code = Column(String(10), unique=True)
    capacity = Column(Integer)
    is_meeting_room = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    quantity_options = Column(JSON)
    cost_multiplier = Column(JSON)
    created_at = Column(DateTime, server_default=func.now())

    seats = relationship('Seat', back_populates='seating_type')


class Seat(Base):
    __tablename__ = 'seats'

    id = Column(Integer, primary_key=True)
    branch_id = Column(Integer, ForeignKey('branches.id', ondelete='CASCADE'), nullable=False)
    seating_type_id = Column(Integer, ForeignKey('seating_types.id'), nullable=False)
    seat_number = Column(String(20), nullable=False)
    seat_code = Column(String(30), unique=True)
    price = Column(Float, default=0, nullable=False)
    capacity = Column(Integer)
    availability_status = Column(String(20), default=AvailabilityStatus.AVAILABLE, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    branch = relationship('Branch', back_populates='seats')
    seating_type = relationship('SeatingType', back_populates='seats')


class Customer(Base):
    __tablename__ = 'customers'

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)
    email = Column(String(120), unique=True, nullable=False)
    phone = Column(String(30))
    company_name = Column(String(120))
    password_hash = Column(String(255), nullable=False)
    coins = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Admin(Base):
    __tablename__ = 'admins'

    id = Column(Integer, primary_key=True)
    username = Column(String(50), unique=True, nullable=False)
    email = Column(String(120), unique=True, nullable=False)
    name = Column(String(120), nullable=False)
    role = Column(String(20), default=AdminRole.BRANCH_ADMIN, nullable=False)
    branch_id = Column(Integer, ForeignKey('branches.id', ondelete='SET NULL'))
    password_hash = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())


class SeatBooking(Base):
    __tablename__ = 'seat_bookings'

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey('customers.id', ondelete='CASCADE'), nullable=False)
    seat_id = Column(Integer, ForeignKey('seats.id', ondelete='CASCADE'), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    total_price = Column(Float, nullable=False)
    # seats booked together in one request; the per-seat price depends on it
    quantity = Column(Integer, default=1, nullable=False)
    status = Column(String(20), default=BookingStatus.PENDING, nullable=False)
    coins_awarded = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    seat = relationship('Seat')


class MeetingBooking(Base):
    __tablename__ = 'meeting_bookings'

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey('customers.id', ondelete='CASCADE'), nullable=False)
    meeting_room_id = Column(Integer, ForeignKey('seats.id', ondelete='CASCADE'), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    num_participants = Column(Integer, default=1, nullable=False)
    amenities = Column(JSON)
    total_price = Column(Float, nullable=False)
    status = Column(String(20), default=BookingStatus.PENDING, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    meeting_room = relationship('Seat')


class TimeSlot(Base):
    __tablename__ = 'time_slots'

    id = Column(Integer, primary_key=True)
    branch_id = Column(Integer, ForeignKey('branches.id', ondelete='CASCADE'), nullable=False)
    seat_id = Column(Integer, ForeignKey('seats.id', ondelete='CASCADE'), nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    booking_id = Column(Integer, ForeignKey('seat_bookings.id', ondelete='SET NULL'))
    meeting_booking_id = Column(Integer, ForeignKey('meeting_bookings.id', ondelete='SET NULL'))
    created_at = Column(DateTime, server_default=func.now())

    seat = relationship('Seat')


class BlacklistedToken(Base):
    __tablename__ = 'blacklisted_tokens'

    id = Column(Integer, primary_key=True)
    jti = Column(String(64), unique=True, nullable=False)
    token_type = Column(String(10), nullable=False)
    subject = Column(String(64))
    expires_at = Column(DateTime, nullable=False)
    blacklisted_at = Column(DateTime, server_default=func.now())


class CoinTransaction(Base):
    __tablename__ = 'coin_transactions'

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey('customers.id', ondelete='CASCADE'), nullable=False)
    amount = Column(Integer, nullable=False)
    transaction_type = Column(String(20), nullable=False)
    description = Column(String(255))
    reference_id = Column(String(64))
    created_at = Column(DateTime, server_default=func.now())


class SupportTicket(Base):
    __tablename__ = 'support_tickets'

    id = Column(Integer, primary_key=True)
    ticket_number = Column(String(40), unique=True)
    customer_id = Column(Integer, ForeignKey('customers.id', ondelete='CASCADE'), nullable=False)
    branch_id = Column(Integer, ForeignKey('branches.id', ondelete='CASCADE'), nullable=False)
    booking_id = Column(Integer)
    booking_type = Column(String(10))
    title = Column(String(200), nullable=False)
    category = Column(String(30), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), default=TicketStatus.NEW, nullable=False)
    assigned_to = Column(Integer, ForeignKey('admins.id', ondelete='SET NULL'))
    closed_at = Column(DateTime)
    reopened_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    messages = relationship('TicketMessage', back_populates='ticket',
                            order_by='TicketMessage.id', cascade='all, delete-orphan')


class TicketMessage(Base):
    __tablename__ = 'ticket_messages'

    id = Column(Integer, primary_key=True)
    ticket_id = Column(Integer, ForeignKey('support_tickets.id', ondelete='CASCADE'), nullable=False)
    sender_type = Column(String(10), nullable=False)
    sender_id = Column(Integer, nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    ticket = relationship('SupportTicket', back_populates='messages')


class Payment(Base):
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey('customers.id', ondelete='CASCADE'), nullable=False)
    booking_id = Column(Integer, nullable=False)
    booking_type = Column(String(10), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(5), default='INR', nullable=False)
    order_id = Column(String(64), unique=True)
    payment_id = Column(String(64))
    status = Column(String(20), default=PaymentStatus.PENDING, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
