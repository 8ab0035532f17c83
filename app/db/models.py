from datetime import datetime, timezone
import uuid
from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import INET
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship


Base = declarative_base()

# Statuses that occupy the single in-flight slot of a subscription.
ACTIVE_REQUEST_STATUSES = ("pending", "processing", "scheduled")
TERMINAL_REQUEST_STATUSES = ("completed", "failed", "cancelled")


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255))
    email = Column(String(255), unique=True, index=True, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    name = Column(String(255), nullable=False)
    description = Column(Text)
    category = Column(String(100))
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(10), default="usd")
    frequency = Column(String(20), default="monthly")
    next_billing = Column(TIMESTAMP(timezone=True))
    status = Column(String(50), default="active", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    cancellation_info = Column(JSON)
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)

    cancellation_requests = relationship(
        "CancellationRequest", back_populates="subscription"
    )


class CancellationProvider(Base):
    __tablename__ = "cancellation_providers"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), unique=True, nullable=False, index=True)
    type = Column(String(50), nullable=False)  # 'api' | 'web_automation' | 'manual'
    api_endpoint = Column(Text)
    login_url = Column(Text)
    logo = Column(Text)
    category = Column(String(100))
    difficulty = Column(String(20), nullable=False, default="medium")
    average_time = Column(Integer)  # minutes
    success_rate = Column(Numeric(4, 3), nullable=False, default=0)
    requires_2fa = Column(Boolean, default=False, nullable=False)
    requires_retention = Column(Boolean, default=False, nullable=False)
    phone_number = Column(String(50))
    email = Column(String(255))
    chat_url = Column(Text)
    instructions = Column(JSON)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class CancellationRequest(Base):
    __tablename__ = "cancellation_requests"
    __table_args__ = (
        # One in-flight request per subscription, enforced by storage.
        Index(
            "uq_cancellation_requests_active_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=text(
                "status IN ('pending', 'processing', 'scheduled')"
            ),
            sqlite_where=text("status IN ('pending', 'processing', 'scheduled')"),
        ),
    )

    id = Column(String(40), primary_key=True, default=generate_request_id)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    subscription_id = Column(
        Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    provider_id = Column(
        Integer, ForeignKey("cancellation_providers.id", ondelete="SET NULL")
    )
    method = Column(String(50), nullable=False)  # 'api' | 'automation' | 'manual'
    priority = Column(String(20), nullable=False, default="normal")
    status = Column(String(50), nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    confirmation_code = Column(String(255))
    effective_date = Column(TIMESTAMP(timezone=True))
    refund_amount = Column(Numeric(10, 2))
    user_notes = Column(Text)
    user_confirmed = Column(Boolean, default=False)
    error_code = Column(String(100))
    error_message = Column(Text)
    external_reference = Column(String(255))
    request_metadata = Column("metadata", JSON)
    scheduled_for = Column(TIMESTAMP(timezone=True))
    last_attempt_at = Column(TIMESTAMP(timezone=True))
    completed_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow, index=True)
    updated_at = Column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)

    subscription = relationship("Subscription", back_populates="cancellation_requests")
    provider = relationship("CancellationProvider")
    logs = relationship(
        "CancellationLog",
        back_populates="request",
        order_by="CancellationLog.id",
    )


class CancellationLog(Base):
    """Append-only timeline entry for a request and/or orchestration."""

    __tablename__ = "cancellation_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(
        String(40),
        ForeignKey("cancellation_requests.id", ondelete="CASCADE"),
        index=True,
    )
    orchestration_id = Column(String(64), index=True)
    action = Column(String(100), nullable=False)
    level = Column(String(20), nullable=False)  # info | success | warning | error
    message = Column(Text, nullable=False)
    log_metadata = Column("metadata", JSON)
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow, nullable=False)

    request = relationship("CancellationRequest", back_populates="logs")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    action = Column(String(255), nullable=False)
    resource = Column(String(255))
    result = Column(String(20), nullable=False)  # success | failure
    error = Column(Text)
    details = Column(JSON)
    ip_address = Column(INET().with_variant(String(45), "sqlite"))
    user_agent = Column(String)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
