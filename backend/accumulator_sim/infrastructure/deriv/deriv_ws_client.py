"""Deriv market-data WebSocket client using asyncio + websockets.

Features:
- Connect with a timeout, bounded retries and exponential backoff
- Optional authorize when an API token is configured
- Heartbeat (ping) task
- MessageRouter: correlate req_id -> response Future
- Tick subscriptions exposed as callback / async-iterator handles

Subscriptions do not survive a dropped connection: every live subscription is
invalidated and callers must subscribe again once the client reconnects.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from accumulator_sim.infrastructure.logging.logging import get_logger
from accumulator_sim.models.market_models import Candle, Tick
from accumulator_sim.services.market.deriv_history import parse_history_response

if TYPE_CHECKING:
    from accumulator_sim.infrastructure.utils.config import DerivConfig

JsonDict = Dict[str, Any]
TickCallback = Callable[[Tick], None]


class FeedError(RuntimeError):
    pass


class ConnectionFailed(FeedError):
    pass


class SubscriptionError(FeedError):
    pass


def _error_message(resp: JsonDict) -> str:
    err = resp.get("error") or {}
    if isinstance(err, dict):
        return str(err.get("message") or err.get("code") or err)
    return str(err)


class MessageRouter:
    def __init__(self) -> None:
        self._futures: Dict[int, asyncio.Future[JsonDict]] = {}
        self._lock = asyncio.Lock()

    async def register(self, req_id: int) -> asyncio.Future[JsonDict]:
        async with self._lock:
            fut: asyncio.Future[JsonDict] = asyncio.get_running_loop().create_future()
            self._futures[req_id] = fut
            return fut

    async def resolve(self, req_id: int, msg: JsonDict) -> None:
        async with self._lock:
            fut = self._futures.pop(req_id, None)
            if fut and not fut.done():
                fut.set_result(msg)

    async def discard(self, req_id: int) -> None:
        async with self._lock:
            self._futures.pop(req_id, None)

    async def reject_all(self, exc: BaseException) -> None:
        async with self._lock:
            for fut in self._futures.values():
                if not fut.done():
                    fut.set_exception(exc)
            self._futures.clear()


_STREAM_END = object()


class TickSubscription:
    """Handle for one live tick stream.

    Ticks are pushed to ``on_update`` callbacks and buffered for ``async for``
    consumers. The buffer keeps the most recent ``buffer_size`` ticks.
    """

    def __init__(self, client: "PriceFeedClient", symbol: str, *, buffer_size: int = 1024) -> None:
        self.symbol = symbol
        self.id: Optional[str] = None
        self._client = client
        self._callbacks: List[TickCallback] = []
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=buffer_size)
        self._error: Optional[FeedError] = None
        self._closed = False
        self._log = get_logger("tick_subscription", symbol=symbol)

    @property
    def active(self) -> bool:
        return not self._closed and self._error is None

    def on_update(self, callback: TickCallback) -> None:
        self._callbacks.append(callback)

    def _bind(self, sub_id: str) -> None:
        self.id = sub_id

    def _push(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def _deliver(self, tick: Tick) -> None:
        if not self.active:
            return
        self._push(tick)
        for cb in list(self._callbacks):
            try:
                cb(tick)
            except Exception as e:
                self._log.error("tick_callback_error", error=str(e))

    def _invalidate(self, exc: FeedError) -> None:
        if not self.active:
            return
        self._error = exc
        self._push(_STREAM_END)

    def __aiter__(self) -> "TickSubscription":
        return self

    async def __anext__(self) -> Tick:
        item = await self._queue.get()
        if item is _STREAM_END:
            # Leave the marker in place so later reads end the same way.
            self._push(_STREAM_END)
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return item

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        was_active = self.active
        self._closed = True
        self._push(_STREAM_END)
        if was_active:
            await self._client._forget(self)


class PriceFeedClient:
    def __init__(
        self,
        websocket_url: str,
        app_id: str,
        api_token: Optional[str] = None,
        *,
        max_retries: int = 3,
        retry_delay_sec: float = 2.0,
        connect_timeout_sec: float = 20.0,
        request_timeout_sec: float = 10.0,
        heartbeat_interval_sec: float = 15.0,
    ) -> None:
        self._log = get_logger("deriv_ws")
        self._url = f"{websocket_url}?app_id={app_id}"
        self._token = api_token
        self._max_retries = max_retries
        self._retry_delay = retry_delay_sec
        self._connect_timeout = connect_timeout_sec
        self._request_timeout = request_timeout_sec
        self._heartbeat_interval = heartbeat_interval_sec

        self._ws: Optional[ClientConnection] = None
        self._connected = False
        self._router = MessageRouter()
        self._connect_lock = asyncio.Lock()

        self._reader_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

        self._req_id = 10_000
        self._subscriptions: Dict[str, TickSubscription] = {}
        self._pending_subscriptions: Dict[int, TickSubscription] = {}

    @classmethod
    def from_config(cls, cfg: "DerivConfig") -> "PriceFeedClient":
        return cls(
            websocket_url=cfg.websocket_url,
            app_id=cfg.app_id,
            api_token=cfg.api_token,
            max_retries=cfg.max_retries,
            retry_delay_sec=cfg.retry_delay_sec,
            connect_timeout_sec=cfg.connect_timeout_sec,
            request_timeout_sec=cfg.request_timeout_sec,
            heartbeat_interval_sec=cfg.heartbeat_interval_sec,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected and self._ws is not None

    async def __aenter__(self) -> "PriceFeedClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the connection if needed. Returns immediately when already connected."""
        if self.is_connected:
            return
        async with self._connect_lock:
            if self.is_connected:
                return

            attempts = self._max_retries + 1
            last_error: Optional[BaseException] = None
            for attempt in range(attempts):
                try:
                    await asyncio.wait_for(self._open(), timeout=self._connect_timeout)
                    return
                except asyncio.TimeoutError as e:
                    last_error = e
                    self._log.warning("ws_connect_timeout", attempt=attempt + 1, timeout=self._connect_timeout)
                except (OSError, WebSocketException, ConnectionFailed) as e:
                    last_error = e
                    self._log.warning("ws_connect_failed", attempt=attempt + 1, error=str(e))

                if attempt < attempts - 1:
                    delay = self._retry_delay * (2 ** attempt)
                    self._log.warning("reconnect_backoff", seconds=delay, next_attempt=attempt + 2)
                    await asyncio.sleep(delay)

            self._log.error("ws_connect_exhausted", attempts=attempts, error=str(last_error))
            raise ConnectionFailed(f"could not connect after {attempts} attempts: {last_error}") from last_error

    async def _open(self) -> None:
        self._log.info("ws_connect", url=self._url)
        ws = await connect(
            self._url,
            ping_interval=None,  # we manage ping manually
            open_timeout=None,  # bounded by connect()
            close_timeout=5,
            max_queue=256,
        )
        self._ws = ws
        try:
            # Reader first so authorize can be resolved.
            self._reader_task = asyncio.create_task(self._reader_loop(ws))

            if self._token:
                auth_resp = await self._raw_request({"authorize": self._token})
                if auth_resp.get("error"):
                    raise FeedError(f"Auth error: {_error_message(auth_resp)}")
                self._log.info("ws_authorized")

            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
            self._connected = True
            self._log.info("ws_connected")
        except BaseException:
            await self._teardown(ConnectionFailed("Disconnected during connect/auth"))
            raise

    async def close(self) -> None:
        if self._ws is None and self._reader_task is None:
            return
        self._log.info("ws_close")
        await self._teardown(ConnectionFailed("client closed"))

    async def _teardown(self, exc: FeedError) -> None:
        self._connected = False
        ws, self._ws = self._ws, None

        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._heartbeat_task = None
        self._reader_task = None

        # Pending requests would otherwise hang until their timeout.
        await self._router.reject_all(exc)
        self._invalidate_subscriptions(exc)

        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                self._log.debug("ws_close_error", error=str(e))

    def _invalidate_subscriptions(self, exc: FeedError) -> None:
        subs = list(self._subscriptions.values()) + list(self._pending_subscriptions.values())
        self._subscriptions.clear()
        self._pending_subscriptions.clear()
        for sub in subs:
            sub._invalidate(SubscriptionError(f"subscription invalidated: {exc}"))
        if subs:
            self._log.warning("subscriptions_invalidated", count=len(subs), reason=str(exc))

    def _next_req_id(self) -> int:
        self._req_id += 1
        return self._req_id

    async def _raw_request(self, payload: JsonDict, *, req_id: Optional[int] = None) -> JsonDict:
        """Send a request on the current socket without triggering a connect."""
        ws = self._ws
        if ws is None:
            raise ConnectionFailed("WebSocket not open")

        req_id = req_id if req_id is not None else self._next_req_id()
        payload = dict(payload)
        payload["req_id"] = req_id

        fut = await self._router.register(req_id)
        try:
            await ws.send(json.dumps(payload))
            return await asyncio.wait_for(fut, timeout=self._request_timeout)
        except asyncio.TimeoutError as e:
            raise FeedError(f"Request timeout req_id={req_id}") from e
        except ConnectionClosed as e:
            raise ConnectionFailed(f"connection closed while sending req_id={req_id}") from e
        finally:
            await self._router.discard(req_id)

    async def request(self, payload: JsonDict) -> JsonDict:
        """Request/response call; connects first if needed."""
        await self.connect()
        return await self._raw_request(payload)

    async def subscribe(self, symbol: str) -> TickSubscription:
        await self.connect()

        sub = TickSubscription(self, symbol)
        req_id = self._next_req_id()
        # Registered before sending so the reader can bind the stream id on the first message.
        self._pending_subscriptions[req_id] = sub
        try:
            resp = await self._raw_request({"ticks": symbol, "subscribe": 1}, req_id=req_id)
        finally:
            self._pending_subscriptions.pop(req_id, None)

        if resp.get("error"):
            raise SubscriptionError(f"subscribe {symbol} failed: {_error_message(resp)}")
        if sub.id is None:
            raise SubscriptionError(f"subscribe {symbol} failed: response carried no subscription id")

        self._log.info("subscribed", symbol=symbol, sub_id=sub.id)
        return sub

    async def _forget(self, sub: TickSubscription) -> None:
        if sub.id is None:
            return
        self._subscriptions.pop(sub.id, None)
        if not self.is_connected:
            return
        resp = await self._raw_request({"forget": sub.id})
        if resp.get("error"):
            raise SubscriptionError(f"forget {sub.id} failed: {_error_message(resp)}")
        self._log.info("unsubscribed", symbol=sub.symbol, sub_id=sub.id)

    async def fetch_history(
        self,
        symbol: str,
        granularity: int = 60,
        count: int = 100,
        *,
        style: str = "candles",
    ) -> List[Candle]:
        if style not in ("candles", "ticks"):
            raise ValueError("style must be 'candles' or 'ticks'")
        payload: JsonDict = {
            "ticks_history": symbol,
            "style": style,
            "count": int(count),
            "end": "latest",
            "adjust_start_time": 1,
        }
        if style == "candles":
            payload["granularity"] = int(granularity)

        resp = await self.request(payload)
        if resp.get("error"):
            raise SubscriptionError(f"ticks_history {symbol} failed: {_error_message(resp)}")
        return parse_history_response(symbol, resp, granularity)

    async def _dispatch(self, msg: JsonDict) -> None:
        req_id = msg.get("req_id")
        if isinstance(req_id, int):
            pending = self._pending_subscriptions.pop(req_id, None)
            if pending is not None and not msg.get("error"):
                sub_id = (msg.get("subscription") or {}).get("id")
                if sub_id:
                    pending._bind(str(sub_id))
                    self._subscriptions[str(sub_id)] = pending
            await self._router.resolve(req_id, msg)

        if msg.get("msg_type") != "tick" or msg.get("error"):
            return
        tick_data = msg.get("tick") or {}
        sub_id = (msg.get("subscription") or {}).get("id") or tick_data.get("id")
        sub = self._subscriptions.get(str(sub_id)) if sub_id else None
        quote, epoch = tick_data.get("quote"), tick_data.get("epoch")
        if sub is None or quote is None or epoch is None:
            return
        sub._deliver(Tick(symbol=str(tick_data.get("symbol") or sub.symbol), epoch=int(epoch), price=float(quote)))

    async def _reader_loop(self, ws: ClientConnection) -> None:
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    self._log.warning("reader_bad_json", size=len(raw))
                    continue
                if isinstance(msg, dict):
                    await self._dispatch(msg)
        except ConnectionClosed as e:
            self._log.info("ws_closed", code=getattr(e.rcvd, "code", None))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("reader_loop_error", error=str(e))

        # Socket ended without close() being called.
        if self._ws is ws:
            self._log.warning("ws_disconnected")
            await self._teardown(ConnectionFailed("connection lost"))

    async def _heartbeat_loop(self, ws: ClientConnection) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=5.0)
                self._log.debug("ws_ping_ok")
            except (asyncio.TimeoutError, ConnectionClosed, OSError) as e:
                self._log.warning("ws_ping_failed", error=str(e))
                # Reader sees the close and tears the session down.
                await ws.close()
                return
