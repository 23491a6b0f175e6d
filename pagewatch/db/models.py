"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from pagewatch.utils.clock import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class MonitorTarget(Base):
    """A user-owned page to watch."""

    __tablename__ = "monitors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    mode: Mapped[str] = mapped_column(String(16), default="text", nullable=False)  # text | visual | price
    selector: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # None = full page
    interval: Mapped[str] = mapped_column(String(16), default="30m", nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Retry policy
    retry_count: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    retry_delay_seconds: Mapped[float] = mapped_column(Float, default=2.0, nullable=False)

    # Notification configuration
    notify_rules: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    price_threshold_min: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    price_threshold_max: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    # State written by the check pipeline
    has_baseline: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_check_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_change_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_screenshot: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_diff: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    last_currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationships
    history: Mapped[list["CheckHistory"]] = relationship(
        "CheckHistory", back_populates="monitor", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("mode IN ('text', 'visual', 'price')", name="ck_monitor_mode"),
    )

    @property
    def is_full_page(self) -> bool:
        return not (self.selector or "").strip()


class CheckHistory(Base):
    """Append-only record of one completed check."""

    __tablename__ = "check_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    monitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("monitors.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # unchanged | changed | error
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    diff_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    previous_screenshot: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_screenshot: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diff_screenshot: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationships
    monitor: Mapped["MonitorTarget"] = relationship("MonitorTarget", back_populates="history")

    __table_args__ = (
        CheckConstraint(
            "status IN ('unchanged', 'changed', 'error')", name="ck_history_status"
        ),
        Index("ix_check_history_monitor_created", "monitor_id", "created_at"),
    )


class AppSettings(Base):
    """Singleton row (id=1) with runtime-editable settings."""

    __tablename__ = "app_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)

    # Proxy used for every browser context
    proxy_server: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    proxy_username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    proxy_password: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # AI change summaries (OpenAI-compatible endpoint, e.g. OpenAI or Ollama)
    ai_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ai_base_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ai_api_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ai_model: Mapped[str] = mapped_column(String(64), default="gpt-3.5-turbo", nullable=False)

    # Outbound notifications
    webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    webhook_type: Mapped[str] = mapped_column(String(32), default="discord", nullable=False)
    telegram_bot_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (CheckConstraint("id = 1", name="ck_app_settings_singleton"),)

    @property
    def playwright_proxy(self) -> Optional[dict]:
        """Proxy settings in the shape Playwright's new_context() expects."""
        if not self.proxy_server:
            return None
        proxy = {"server": self.proxy_server}
        if self.proxy_username:
            proxy["username"] = self.proxy_username
            proxy["password"] = self.proxy_password or ""
        return proxy
