"""FastAPI application factory: execution endpoints and the realtime channel."""

from __future__ import annotations

import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from dcabot.config.constants import EventType, ExecutionType
from dcabot.core.engine import COMPLETED, FAILED, PENDING
from dcabot.core.errors import DCAError, MarketDataUnavailable, NotFound, PreconditionFailed
from dcabot.notify.broadcaster import envelope

if TYPE_CHECKING:
    from dcabot.container import Container

logger = logging.getLogger(__name__)


class TradingViewSignal(BaseModel):
    """Alert payload posted by a TradingView webhook."""

    model_config = ConfigDict(populate_by_name=True)

    strategy_id: int = Field(alias="strategyId")
    action: str = "buy"
    symbol: str | None = None
    price: float | None = None


def get_container(request: Request) -> "Container":
    return request.app.state.container


def get_user_id(x_user_id: int = Header(...)) -> int:
    """Caller identity; authentication happens upstream."""
    return x_user_id


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _same_market(symbol: str, base: str, quote: str) -> bool:
    """Match a TradingView ticker (``BINANCE:BTCUSDT``, ``BTC/USDT``) to a pair."""
    ticker = symbol.rsplit(":", 1)[-1]
    for sep in "/-_":
        ticker = ticker.replace(sep, "")
    return ticker.upper() == f"{base}{quote}".upper()


def create_app(container: "Container", run_scheduler: bool = False) -> FastAPI:
    """Create the API around an (unstarted) container.

    Parameters
    ----------
    container:
        Component graph; started and stopped with the application lifespan.
    run_scheduler:
        Also run the scheduler loop inside the lifespan.
    """

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        await container.start()
        if run_scheduler:
            await container.scheduler.start()
        try:
            yield
        finally:
            await container.stop()

    app = FastAPI(title="DCA Bot", version="0.1.0", lifespan=_lifespan)
    app.state.container = container
    app.add_middleware(
        CORSMiddleware,
        allow_origins=container.settings.api.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(PreconditionFailed)
    async def _precondition(request: Request, exc: PreconditionFailed) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(MarketDataUnavailable)
    async def _market_data(request: Request, exc: MarketDataUnavailable) -> JSONResponse:
        return _error(503, str(exc))

    @app.exception_handler(DCAError)
    async def _unhandled(request: Request, exc: DCAError) -> JSONResponse:
        # credential or venue setup errors raised before any execution record exists
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return _error(500, str(exc))

    @app.get("/health")
    async def health(c: "Container" = Depends(get_container)) -> dict:
        return {
            "status": "ok",
            "scheduler": bool(c.scheduler and c.scheduler.running),
            "connections": c.broadcaster.connection_count(),
        }

    @app.post("/strategies/{strategy_id}/execute")
    async def execute_strategy(
        strategy_id: int,
        user_id: int = Depends(get_user_id),
        c: "Container" = Depends(get_container),
    ):
        await c.strategies.get(user_id, strategy_id)
        outcome = await c.engine.execute_strategy(
            strategy_id, ExecutionType.MANUAL, user_id=user_id
        )
        if outcome.status == FAILED:
            return _error(500, outcome.reason)
        if outcome.status == COMPLETED:
            return {
                "orderId": outcome.order_id,
                "quantity": outcome.quantity,
                "price": outcome.price,
                "executionId": outcome.execution.id,
            }
        return outcome.to_dict()

    @app.get("/strategies/{strategy_id}/stats")
    async def strategy_stats(
        strategy_id: int,
        user_id: int = Depends(get_user_id),
        c: "Container" = Depends(get_container),
    ) -> dict:
        stats = await c.strategies.stats(user_id, strategy_id)
        return stats.to_dict()

    @app.post("/external/tradingview")
    async def tradingview_webhook(
        signal: TradingViewSignal,
        x_webhook_secret: str = Header(""),
        c: "Container" = Depends(get_container),
    ):
        expected = c.settings.security.webhook_secret
        if not expected or not hmac.compare_digest(x_webhook_secret.encode(), expected.encode()):
            logger.warning("Rejected TradingView webhook for strategy %s", signal.strategy_id)
            return _error(401, "Invalid webhook secret")
        if signal.action.lower() != "buy":
            return _error(400, f"Unsupported action: {signal.action}")
        strategy = await c.repo.get_strategy(signal.strategy_id)
        if strategy is None:
            raise NotFound(f"Strategy {signal.strategy_id} not found")
        if signal.symbol and not _same_market(
            signal.symbol, strategy.base_currency, strategy.quote_currency
        ):
            return _error(400, f"Signal symbol {signal.symbol} does not match {strategy.pair}")

        outcome = await c.engine.execute_strategy(
            signal.strategy_id,
            ExecutionType.CONDITIONAL,
            signal=signal.model_dump(exclude_none=True),
        )
        if outcome.status == FAILED:
            return _error(500, outcome.reason)
        if outcome.status in (COMPLETED, PENDING):
            return outcome.to_dict()
        return {"status": outcome.status, "reason": outcome.reason}

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket, user_id: int = Query(..., alias="userId")) -> None:
        broadcaster = container.broadcaster
        await websocket.accept()
        broadcaster.register(user_id, websocket)
        await websocket.send_text(envelope(EventType.CONNECTED, {"userId": user_id}))
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send_text(
                        envelope(EventType.ERROR, {"message": "Invalid message format"})
                    )
                    continue
                if isinstance(message, dict) and message.get("type") == "ping":
                    await websocket.send_text(envelope(EventType.PONG, {}))
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unregister(user_id, websocket)

    return app
