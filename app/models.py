import enum

from sqlalchemy import (
    Column, String, Integer, Date, DateTime, Numeric, Text, ForeignKey,
    CheckConstraint, Index,
)
from sqlalchemy.orm import relationship

from app.db import Base


class Sport(str, enum.Enum):
    FUTBOL = "futbol"
    PADDLE = "paddle"
    TENIS = "tenis"
    GOLF = "golf"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


_SPORTS_SQL = ",".join(f"'{s.value}'" for s in Sport)


def format_minute(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


class Reservation(Base):
    __tablename__ = "reservations"
    id = Column(String, primary_key=True)
    sport = Column(String, nullable=False)
    booking_date = Column(Date, nullable=False)
    start_minute = Column(Integer, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
    customer_name = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False)
    customer_email = Column(String)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    internal_notes = Column(Text)
    refund_amount = Column(Numeric(10, 2))
    refund_status = Column(String)
    refund_reason = Column(Text)
    refunded_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    transaction = relationship("PaymentTransaction", back_populates="reservation", uselist=False)

    __table_args__ = (
        CheckConstraint(f"sport in ({_SPORTS_SQL})", name="reservation_sport_valid"),
        CheckConstraint("payment_status in ('pending','completed','failed')", name="reservation_status_valid"),
        CheckConstraint("duration_minutes > 0", name="reservation_duration_positive"),
        CheckConstraint("end_minute = start_minute + duration_minutes", name="reservation_end_consistent"),
        Index("ix_reservations_slot", "sport", "booking_date"),
    )

    @property
    def start_time(self) -> str:
        return format_minute(self.start_minute)

    @property
    def end_time(self) -> str:
        return format_minute(self.end_minute)


class TimeBlock(Base):
    __tablename__ = "time_blocks"
    id = Column(String, primary_key=True)
    sport = Column(String, nullable=False)
    block_date = Column(Date, nullable=False)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
    reason = Column(Text)
    created_by = Column(String)
    created_at = Column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(f"sport in ({_SPORTS_SQL})", name="time_block_sport_valid"),
        CheckConstraint("end_minute > start_minute", name="time_block_window_valid"),
        Index("ix_time_blocks_slot", "sport", "block_date"),
    )

    @property
    def start_time(self) -> str:
        return format_minute(self.start_minute)

    @property
    def end_time(self) -> str:
        return format_minute(self.end_minute)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    id = Column(String, primary_key=True)
    reservation_id = Column(
        String, ForeignKey("reservations.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    preference_id = Column(String)
    gateway_payment_id = Column(String)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False)  # gateway vocabulary: pending, approved, rejected, ...
    payment_method = Column(String)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    reservation = relationship("Reservation", back_populates="transaction")
