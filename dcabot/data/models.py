"""Dataclass models representing domain objects persisted to SQLite."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from dcabot.config.constants import (
    AmountType,
    ConditionOperator,
    ConditionType,
    ExchangeType,
    ExecutionStatus,
    ExecutionType,
    Frequency,
    NotificationType,
)

_PAIR_SEPARATORS = re.compile(r"[/\-_]")


def split_pair(pair: str) -> tuple[str, str]:
    """Split ``"BTC/USDT"``, ``"BTC-USDT"`` or ``"BTC_USDT"`` into base and quote."""
    parts = _PAIR_SEPARATORS.split(pair.strip().upper())
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid trading pair: {pair!r}")
    return parts[0], parts[1]


@dataclass
class User:
    """Account owner with notification preferences."""

    email: str
    name: str = ""
    is_active: bool = True
    notify_email: bool = True
    notify_telegram: bool = False
    notify_line: bool = False
    telegram_chat_id: str = ""
    line_user_id: str = ""
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class Exchange:
    """A user's credential binding to one trading venue.

    ``api_key``, ``api_secret`` and ``passphrase`` hold vault blobs, never
    plaintext.
    """

    user_id: int
    name: str
    type: ExchangeType
    api_key: str
    api_secret: str
    passphrase: str = ""
    is_active: bool = True
    last_sync_at: datetime | None = None
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class StrategyCondition:
    """One market check gating a conditional firing."""

    type: ConditionType
    operator: ConditionOperator
    value: float
    is_active: bool = True
    strategy_id: int | None = None
    id: int | None = None


@dataclass
class Strategy:
    """A recurring purchase plan."""

    user_id: int
    exchange_id: int
    name: str
    pair: str
    amount: float
    frequency: Frequency
    start_date: datetime
    amount_type: AmountType = AmountType.FIXED
    end_date: datetime | None = None
    is_active: bool = True
    description: str = ""
    base_currency: str = ""
    quote_currency: str = ""
    conditions: list[StrategyCondition] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if not self.base_currency or not self.quote_currency:
            self.base_currency, self.quote_currency = split_pair(self.pair)

    def validate(self) -> None:
        """Check the record invariants. Raises ``ValueError`` on violation."""
        if self.amount <= 0:
            raise ValueError("Strategy amount must be greater than zero")
        if AmountType(self.amount_type) is AmountType.PERCENTAGE and self.amount > 100:
            raise ValueError("Percentage amount cannot exceed 100")
        Frequency(self.frequency)
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")

    def has_ended(self, now: datetime) -> bool:
        return self.end_date is not None and now > self.end_date

    @property
    def active_conditions(self) -> list[StrategyCondition]:
        return [c for c in self.conditions if c.is_active]


@dataclass
class Execution:
    """The record of one attempted strategy firing."""

    strategy_id: int
    amount: float
    timestamp: datetime
    type: ExecutionType = ExecutionType.SCHEDULED
    status: ExecutionStatus = ExecutionStatus.PENDING
    quantity: float = 0.0
    price: float = 0.0
    fee: float = 0.0
    exchange_order_id: str = ""
    client_order_id: str = ""
    error_message: str = ""
    updated_at: datetime | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "strategyId": self.strategy_id,
            "amount": self.amount,
            "quantity": self.quantity,
            "price": self.price,
            "fee": self.fee,
            "status": self.status.value,
            "type": self.type.value,
            "exchangeOrderId": self.exchange_order_id or None,
            "errorMessage": self.error_message or None,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ScheduledJob:
    """Per-strategy schedule bookkeeping (1:1 with an active Strategy)."""

    strategy_id: int
    next_run_at: datetime
    last_run_at: datetime | None = None
    run_count: int = 0
    failure_count: int = 0
    is_active: bool = True
    locked_by: str = ""
    locked_until: datetime | None = None


@dataclass
class Notification:
    """A delivered or queued user-facing message."""

    user_id: int
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    channels: list[str] = field(default_factory=list)
    is_read: bool = False
    created_at: datetime | None = None
    id: int | None = None
