"""
GammaDesk: WebSocket Streaming

Live trade-print ingestion and burst push.

Endpoint:
    /ws/trades/{ticker}: clients stream prints in, receive acks, and every
    client watching the ticker receives detected bursts.

Message format (client → server)::

    {"contract_symbol": "SPY240621C00450000", "price": 2.15, "size": 50,
     "timestamp": "2024-06-21T14:30:00Z", "bid": 2.10, "ask": 2.15}
    [ ...same, batched... ]
    "close"

Message format (server → client)::

    {"type": "ack", "data": {"accepted": 1, "rejected": 0, "bursts": []}}
    {"type": "burst", "data": {"strike": 450.0, "side": "Ask", ...}}
    {"type": "error", "data": {"detail": "..."}}
    {"type": "heartbeat", "data": {"ticker": "SPY", "ts": 1707...}}
"""

from __future__ import annotations

import asyncio
import json
import time

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from gammadesk.desk import get_desk
from gammadesk.models import FlowBurst
from gammadesk.utils.validators import validate_ticker

log = structlog.get_logger(__name__)

ws_router = APIRouter()

HEARTBEAT_SECONDS = 15.0


# ──────────────────────────────────────────────
# Connection Manager
# ──────────────────────────────────────────────


class ConnectionManager:
    """Track active WebSocket connections per ticker and broadcast bursts."""

    def __init__(self):
        self._clients: dict[str, set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, ticker: str):
        await websocket.accept()
        self._clients.setdefault(ticker, set()).add(websocket)
        log.info("ws.trades.connected", ticker=ticker, total=len(self._clients[ticker]))

    def disconnect(self, websocket: WebSocket, ticker: str):
        if ticker in self._clients:
            self._clients[ticker].discard(websocket)
            if not self._clients[ticker]:
                del self._clients[ticker]
        log.info("ws.trades.disconnected", ticker=ticker)

    async def broadcast_bursts(self, ticker: str, bursts: list[FlowBurst]):
        """Send bursts to every client watching a ticker; drop dead sockets."""
        clients = self._clients.get(ticker, set())
        dead: list[WebSocket] = []

        for ws in list(clients):
            for burst in bursts:
                try:
                    await ws.send_json({"type": "burst", "data": burst.model_dump(mode="json")})
                except Exception as exc:
                    log.debug("ws.send_failed", ticker=ticker, error=str(exc))
                    dead.append(ws)
                    break

        for ws in dead:
            clients.discard(ws)

    @property
    def active_tickers(self) -> list[str]:
        return list(self._clients.keys())

    @property
    def total_connections(self) -> int:
        return sum(len(v) for v in self._clients.values())


manager = ConnectionManager()


# ──────────────────────────────────────────────
# Trade Stream Endpoint
# ──────────────────────────────────────────────


@ws_router.websocket("/ws/trades/{ticker}")
async def trade_stream(websocket: WebSocket, ticker: str):
    """Bidirectional trade stream for a single underlying."""
    try:
        ticker = validate_ticker(ticker)
    except ValueError as exc:
        await websocket.close(code=1008, reason=str(exc))
        return

    await manager.connect(websocket, ticker)
    desk = get_desk()

    try:
        while True:
            try:
                msg = await asyncio.wait_for(websocket.receive_text(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                await websocket.send_json({
                    "type": "heartbeat",
                    "data": {"ticker": ticker, "ts": int(time.time())},
                })
                continue

            if msg == "close":
                break

            try:
                payload = json.loads(msg)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "data": {"detail": "Invalid JSON"}})
                continue

            prints = payload if isinstance(payload, list) else [payload]
            # Ingest holds a lock; keep it off the event loop
            result = await run_in_threadpool(desk.ingest_trades, ticker, prints)

            await websocket.send_json({"type": "ack", "data": result.model_dump(mode="json")})
            if result.bursts:
                await manager.broadcast_bursts(ticker, result.bursts)

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, ticker)
