"""Enums and constants used throughout the DCA service."""

from enum import Enum


class Frequency(str, Enum):
    """How often a strategy fires."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AmountType(str, Enum):
    """How ``Strategy.amount`` is interpreted.

    FIXED: amount of quote currency spent per firing.
    PERCENTAGE: percent of the free quote balance spent per firing.
    """

    FIXED = "fixed"
    PERCENTAGE = "percentage"


class ExchangeType(str, Enum):
    """Supported trading venues (and their testnet variants)."""

    BINANCE = "binance"
    BINANCE_TESTNET = "binance_testnet"
    COINBASE = "coinbase"
    COINBASE_TESTNET = "coinbase_testnet"
    BYBIT = "bybit"
    BYBIT_TESTNET = "bybit_testnet"

    @property
    def is_testnet(self) -> bool:
        return self.value.endswith("_testnet")

    @property
    def venue(self) -> str:
        return self.value.removesuffix("_testnet")


class ExecutionStatus(str, Enum):
    """Lifecycle state of one strategy firing."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.PENDING


class ExecutionType(str, Enum):
    """What triggered a firing."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    CONDITIONAL = "conditional"


class OrderSide(str, Enum):
    """Order direction."""

    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    """Order fill status as reported by a venue adapter."""

    PENDING = "PENDING"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"

    @property
    def is_settled(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED)


class ConditionType(str, Enum):
    """Market check gating a conditional firing."""

    PRICE_ABOVE = "price_above"
    PRICE_BELOW = "price_below"
    RSI_ABOVE = "rsi_above"
    RSI_BELOW = "rsi_below"
    VOLUME_ABOVE = "volume_above"

    @property
    def metric(self) -> str:
        """The market metric this condition reads: price, rsi or volume."""
        return self.value.split("_", 1)[0]


class ConditionOperator(str, Enum):
    """Comparison applied between the metric and the condition value."""

    GT = "gt"
    LT = "lt"
    EQ = "eq"
    GTE = "gte"
    LTE = "lte"


class NotificationType(str, Enum):
    """Kinds of user-facing messages."""

    EXECUTION_SUCCESS = "execution_success"
    EXECUTION_FAILED = "execution_failed"
    STRATEGY_CREATED = "strategy_created"
    STRATEGY_UPDATED = "strategy_updated"
    STRATEGY_DELETED = "strategy_deleted"
    PRICE_ALERT = "price_alert"
    SYSTEM_ANNOUNCEMENT = "system_announcement"


class NotificationChannel(str, Enum):
    """Delivery channels for notifications."""

    EMAIL = "email"
    LINE = "line"
    TELEGRAM = "telegram"


class EventType(str, Enum):
    """Realtime envelope types pushed to connected clients."""

    CONNECTED = "connected"
    EXECUTION_UPDATE = "execution_update"
    STRATEGY_UPDATE = "strategy_update"
    NOTIFICATION = "notification"
    PONG = "pong"
    ERROR = "error"


# RSI lookback used by rsi_above / rsi_below conditions
RSI_PERIOD = 14

# Candle interval and count fetched to compute RSI
RSI_INTERVAL = "1h"
RSI_CANDLES = 100

# Prefix for client order ids; makes order submission idempotent per firing
CLIENT_ORDER_PREFIX = "dca"

# SQLite database filename
DB_FILENAME = "dcabot.db"
