"""Market conditions gating conditional firings."""

from __future__ import annotations

import logging
import math
import operator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

import pandas as pd
import ta

from dcabot.config.constants import (
    RSI_CANDLES,
    RSI_INTERVAL,
    RSI_PERIOD,
    ConditionOperator,
    ConditionType,
)
from dcabot.core.errors import MarketDataUnavailable

if TYPE_CHECKING:
    from dcabot.data.models import StrategyCondition
    from dcabot.exchange.base import Candle, ExchangeClient

logger = logging.getLogger(__name__)

_OPERATORS: dict[ConditionOperator, Callable[[float, float], bool]] = {
    ConditionOperator.GT: operator.gt,
    ConditionOperator.LT: operator.lt,
    ConditionOperator.GTE: operator.ge,
    ConditionOperator.LTE: operator.le,
    ConditionOperator.EQ: lambda a, b: math.isclose(a, b, rel_tol=1e-9, abs_tol=1e-12),
}


@dataclass
class MarketSnapshot:
    """Metrics read once per conditional firing.

    ``rsi`` is only computed when an active RSI condition needs it.
    """

    price: float
    volume: float
    rsi: float | None = None

    def metric(self, name: str) -> float:
        value = getattr(self, name)
        if value is None:
            raise MarketDataUnavailable(f"Metric {name!r} not available in snapshot")
        return value


def candles_to_frame(candles: list["Candle"]) -> pd.DataFrame:
    """OHLCV DataFrame indexed by UTC timestamp, oldest first."""
    df = pd.DataFrame(
        [(c.timestamp, c.open, c.high, c.low, c.close, c.volume) for c in candles],
        columns=["timestamp", "open", "high", "low", "close", "volume"],
    )
    df["timestamp"] = pd.to_datetime(df["timestamp"], unit="ms", utc=True)
    return df.set_index("timestamp").sort_index()


def compute_rsi(closes: pd.Series, period: int = RSI_PERIOD) -> float:
    """Latest RSI value of a close-price series.

    Raises
    ------
    MarketDataUnavailable
        If there are not enough closes to fill the lookback window.
    """
    if len(closes) <= period:
        raise MarketDataUnavailable(
            f"Need more than {period} closes for RSI, got {len(closes)}"
        )
    rsi = ta.momentum.rsi(closes, window=period, fillna=False).dropna()
    if rsi.empty:
        raise MarketDataUnavailable("RSI could not be computed")
    return float(rsi.iloc[-1])


async def build_snapshot(
    client: "ExchangeClient",
    pair: str,
    conditions: list["StrategyCondition"],
) -> MarketSnapshot:
    """Fetch what *conditions* need from the venue."""
    ticker = await client.get_ticker(pair)
    snapshot = MarketSnapshot(price=ticker.price, volume=ticker.volume_24h)
    if any(ConditionType(c.type).metric == "rsi" for c in conditions):
        candles = await client.get_klines(pair, RSI_INTERVAL, RSI_CANDLES)
        snapshot.rsi = compute_rsi(candles_to_frame(candles)["close"])
    return snapshot


def describe(condition: "StrategyCondition") -> str:
    cond_type = ConditionType(condition.type)
    return f"{cond_type.metric} {ConditionOperator(condition.operator).value} {condition.value:g}"


def evaluate_condition(condition: "StrategyCondition", snapshot: MarketSnapshot) -> bool:
    """Compare the condition's metric against its value using its operator."""
    metric = ConditionType(condition.type).metric
    compare = _OPERATORS[ConditionOperator(condition.operator)]
    return compare(snapshot.metric(metric), float(condition.value))


def failed_conditions(
    conditions: list["StrategyCondition"], snapshot: MarketSnapshot
) -> list[str]:
    """Descriptions of every active condition that does not hold."""
    failed = []
    for condition in conditions:
        if not condition.is_active:
            continue
        if not evaluate_condition(condition, snapshot):
            failed.append(describe(condition))
    logger.debug("Evaluated %d conditions, %d failed", len(conditions), len(failed))
    return failed
