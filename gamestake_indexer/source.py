"""Contract event source: historical backfill, then live delivery.

Records and Checkpoints are pushed onto a bounded queue and consumed through
``EventSource.records()``. A Checkpoint(n) promises that every watched log in
blocks <= n has already been emitted; the cursor never moves past a block the
source could not fetch.
"""

import asyncio
import json
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union

import websockets
from web3 import Web3
from web3.exceptions import Web3Exception

from .abi import LogDecoder
from .config import IndexerConfig
from .errors import DecodeError, SourceGapError
from .records import Checkpoint, EventRecord
from .util import log, normalize_log, to_hex

SourceItem = Union[EventRecord, Checkpoint]

_TOO_LARGE_HINTS = ("query returned more than", "too many", "block range", "limit exceeded")


def _range_too_large(exc: Exception) -> bool:
    msg = str(exc).lower()
    return any(hint in msg for hint in _TOO_LARGE_HINTS)


class EventSource:
    def __init__(
        self,
        config: IndexerConfig,
        w3: Optional[Any] = None,
        decoder: Optional[LogDecoder] = None,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.config = config
        self.w3_http = w3 if w3 is not None else Web3(Web3.HTTPProvider(config.rpc_http))
        self.decoder = decoder or LogDecoder(
            self.w3_http.codec,
            config.play_game_address,
            config.token_store_address,
            gt_decimals=config.gt_decimals,
            usdt_decimals=config.usdt_decimals,
        )
        self._connect = connect or websockets.connect
        self.queue: "asyncio.Queue[SourceItem]" = asyncio.Queue(maxsize=config.queue_size)
        self.batch_size = config.batch_size

        # highest block whose logs have all been emitted
        self.cursor: Optional[int] = config.start_block - 1 if config.start_block > 0 else None
        # block currently being received over the subscription
        self._open_block: Optional[int] = None
        self._delivery_lock = asyncio.Lock()
        self._block_ts_cache: Dict[int, Optional[int]] = {}
        self._ws_id = 0
        self._task: Optional[asyncio.Future] = None

        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.last_progress_at: Optional[float] = None
        self.malformed_count = 0
        self.removed_count = 0

    def resume_from(self, block_number: int) -> None:
        """Deliver from ``block_number`` onwards (re-delivering anything after it)."""
        self.cursor = block_number - 1 if block_number > 0 else None

    @property
    def next_block(self) -> int:
        return 0 if self.cursor is None else self.cursor + 1

    def records(self) -> AsyncIterator[SourceItem]:
        """Pull-based view of the live source; runs the producer while iterated."""
        return self._drain(self.run)

    def records_between(self, from_block: int, to_block: int) -> AsyncIterator[SourceItem]:
        """One-shot backfill of ``[from_block, to_block]``."""
        self.resume_from(from_block)
        return self._drain(lambda: self.backfill_range(from_block, to_block))

    async def _drain(self, produce: Callable[[], Awaitable[None]]) -> AsyncIterator[SourceItem]:
        self._task = asyncio.ensure_future(produce())
        producer = self._task
        try:
            while True:
                if producer.done():
                    while not self.queue.empty():
                        yield self.queue.get_nowait()
                    if not producer.cancelled():
                        producer.result()
                    return
                getter = asyncio.ensure_future(self.queue.get())
                done, _ = await asyncio.wait({getter, producer}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                else:
                    getter.cancel()
        finally:
            if not producer.done():
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def run(self) -> None:
        if not self.config.rpc_ws:
            log("No websocket endpoint configured, polling eth_getLogs")
            await self._poll_loop()
            return
        tasks = [
            asyncio.ensure_future(self._subscribe_loop()),
            asyncio.ensure_future(self._health_check_loop()),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                task.result()
        finally:
            for task in tasks:
                task.cancel()

    # -- backfill ---------------------------------------------------------

    async def latest_block(self) -> int:
        return await asyncio.to_thread(lambda: self.w3_http.eth.block_number)

    async def backfill_missed_blocks(self) -> None:
        async with self._delivery_lock:
            await self._backfill_missed()

    async def backfill_range(self, from_block: int, to_block: int) -> None:
        async with self._delivery_lock:
            await self._backfill(from_block, to_block)

    async def _backfill_missed(self) -> None:
        latest = await self.latest_block()
        from_block = self.next_block
        if from_block > latest:
            return
        await self._backfill(from_block, latest)

    async def _backfill(self, from_block: int, to_block: int) -> None:
        current = from_block
        attempts = 0
        while current <= to_block:
            batch_to = min(current + self.batch_size - 1, to_block)
            log_filter = {
                "fromBlock": current,
                "toBlock": batch_to,
                "address": self.decoder.addresses,
                "topics": [self.decoder.topics],
            }
            try:
                logs = await asyncio.to_thread(self.w3_http.eth.get_logs, log_filter)
            except (ValueError, Web3Exception) as exc:
                if self.batch_size > 1 and _range_too_large(exc):
                    self.batch_size = max(self.batch_size // 2, 1)
                    log(
                        f"WARN: get_logs too large ({current}-{batch_to}), "
                        f"reducing batch size to {self.batch_size}"
                    )
                    continue
                attempts += 1
                self._mark_failure(exc)
                if attempts > self.config.max_range_retries:
                    raise SourceGapError(
                        current, batch_to, f"{exc} (gave up after {attempts} attempts)"
                    ) from exc
                # the cursor has not moved, so the same range is simply fetched again
                delay = min(
                    self.config.reconnect_delay * 2 ** (attempts - 1),
                    self.config.max_reconnect_delay,
                )
                log(f"WARN: get_logs {current}-{batch_to} failed: {exc}; retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue
            attempts = 0

            entries = sorted(
                (normalize_log(raw) for raw in logs),
                key=lambda x: (x.get("blockNumber") or 0, x.get("logIndex") or 0),
            )
            for entry in entries:
                if entry.get("removed"):
                    self._report_removed(entry)
                    continue
                await self._emit_log(entry)
            if logs:
                log(f"Backfilled {len(logs)} logs in blocks {current}-{batch_to}")
            await self._checkpoint(batch_to)
            current = batch_to + 1

    # -- live delivery ------------------------------------------------------

    async def _subscribe_loop(self) -> None:
        backoff = self.config.reconnect_delay
        while True:
            try:
                await self.backfill_missed_blocks()
                async with self._connect(self.config.rpc_ws, ping_interval=20, ping_timeout=20) as ws:
                    log("Websocket connected, subscribing to logs...")
                    sub_id = await self._ws_subscribe(ws)
                    log(f"Subscribed: {sub_id}")
                    backoff = self.config.reconnect_delay
                    self._mark_progress()
                    async for message in ws:
                        await self._handle_ws_message(json.loads(message))
                raise ConnectionError("websocket closed by server")
            except (SourceGapError, asyncio.CancelledError):
                raise
            except Exception as exc:
                self._mark_failure(exc)
                log(f"Websocket error: {exc}; reconnecting in {backoff:.1f}s")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.config.max_reconnect_delay)

    async def _ws_subscribe(self, ws: Any) -> str:
        self._ws_id += 1
        req_id = self._ws_id
        payload = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "eth_subscribe",
            "params": ["logs", {"address": self.decoder.addresses, "topics": [self.decoder.topics]}],
        }
        await ws.send(json.dumps(payload))

        while True:
            data = json.loads(await ws.recv())
            if data.get("id") == req_id:
                if "result" in data:
                    return data["result"]
                raise ConnectionError(f"Subscribe failed: {data}")
            await self._handle_ws_message(data)

    async def _handle_ws_message(self, payload: Dict[str, Any]) -> None:
        if payload.get("method") == "eth_subscription":
            entry = payload.get("params", {}).get("result")
            if entry:
                await self._handle_ws_log(entry)
        elif payload.get("id") is not None and payload.get("error"):
            log(f"WS error: {payload}")

    async def _handle_ws_log(self, raw: Dict[str, Any]) -> None:
        async with self._delivery_lock:
            entry = normalize_log(raw)
            if entry.get("removed"):
                self._report_removed(entry)
                return
            block_number = entry.get("blockNumber")
            if block_number is None:
                self._report_malformed(entry, "live log without blockNumber")
                return

            if self._open_block is not None and block_number > self._open_block:
                await self._checkpoint(self._open_block)
            if block_number > self.next_block:
                await self._backfill(self.next_block, block_number - 1)
            if block_number >= self.next_block:
                self._open_block = block_number
            await self._emit_log(entry)

    async def _poll_loop(self) -> None:
        backoff = self.config.reconnect_delay
        while True:
            try:
                await self.backfill_missed_blocks()
                backoff = self.config.reconnect_delay
            except (SourceGapError, asyncio.CancelledError):
                raise
            except Exception as exc:
                self._mark_failure(exc)
                log(f"Poll error: {exc}; retrying in {backoff:.1f}s")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.config.max_reconnect_delay)
                continue
            await asyncio.sleep(self.config.poll_interval)

    async def _health_check_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval)
            try:
                latest = await self.latest_block()
                if latest > self.next_block - 1 + self.config.health_check_threshold:
                    await self.backfill_missed_blocks()
            except (SourceGapError, asyncio.CancelledError):
                raise
            except Exception as exc:
                self._mark_failure(exc)
                log(f"Health check error: {exc}")

    # -- emission ---------------------------------------------------------

    async def _emit_log(self, entry: Dict[str, Any]) -> None:
        try:
            block_ts = await self._get_block_timestamp(entry.get("blockNumber"))
            record = self.decoder.decode(entry, block_timestamp=block_ts)
        except DecodeError as exc:
            self._report_malformed(entry, str(exc))
            return
        await self.queue.put(record)

    async def _checkpoint(self, block_number: int) -> None:
        if self.cursor is not None and block_number <= self.cursor:
            return
        self.cursor = block_number
        if self._open_block is not None and self._open_block <= block_number:
            self._open_block = None
        block_ts = await self._get_block_timestamp(block_number)
        await self.queue.put(Checkpoint(block_number, block_ts))
        self._mark_progress()

    async def _get_block_timestamp(self, block_number: Optional[int]) -> Optional[int]:
        if block_number is None or not self.config.fetch_timestamps:
            return None
        if block_number in self._block_ts_cache:
            return self._block_ts_cache[block_number]
        block = await asyncio.to_thread(self.w3_http.eth.get_block, block_number)
        ts = block.get("timestamp")
        if len(self._block_ts_cache) > 4096:
            self._block_ts_cache.clear()
        self._block_ts_cache[block_number] = ts
        return ts

    def _report_malformed(self, entry: Dict[str, Any], reason: str) -> None:
        self.malformed_count += 1
        tx_hash = entry.get("transactionHash")
        where = f"{to_hex(tx_hash)}:{entry.get('logIndex')}" if tx_hash else "unknown tx"
        log(f"WARN: skipping malformed log {where}: {reason}")

    def _report_removed(self, entry: Dict[str, Any]) -> None:
        self.removed_count += 1
        tx_hash = entry.get("transactionHash")
        log(
            f"ALERT: log {to_hex(tx_hash) if tx_hash else '?'}:{entry.get('logIndex')} in block "
            f"{entry.get('blockNumber')} removed by a reorg; applied state may need reconciliation"
        )

    def _mark_progress(self) -> None:
        self.consecutive_failures = 0
        self.last_progress_at = time.time()

    def _mark_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        self.last_error = f"{type(exc).__name__}: {exc}"
