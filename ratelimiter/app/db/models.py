from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ratelimiter.app.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitConfigRecord(Base):
    """Admin-managed rate limit config for a (user, resource) pair."""

    __tablename__ = "rate_limit_configs"
    __table_args__ = (
        Index("idx_user_resources", "user_id", "resource", unique=True),
        Index("idx_tier", "tier"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255))
    resource: Mapped[str] = mapped_column(String(255))
    tier: Mapped[str] = mapped_column(String(50))  # free | premium | enterprise
    requests_per_minute: Mapped[int] = mapped_column(Integer)
    burst_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    algorithm: Mapped[str | None] = mapped_column(String(50), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def is_active(self) -> bool:
        return bool(self.enabled)


class RateLimitUsageLog(Base):
    """One admission decision, written by the usage audit logger."""

    __tablename__ = "rate_limit_usage_logs"
    __table_args__ = (
        Index("idx_user_timestamp", "user_id", "created_at"),
        Index("idx_allowed", "allowed", "created_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String(255))
    resource: Mapped[str] = mapped_column(String(255))
    allowed: Mapped[bool] = mapped_column(Boolean)
    remaining_tokens: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    algorithm: Mapped[str | None] = mapped_column(String(50), nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)  # IPv6 max length
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
