import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from holder_index.abis import TRANSFER_TOPIC
from holder_index.cache import cache_key
from holder_index.errors import ChainReadError, LogRangeTooLargeError
from holder_index.models import BURN, TRANSFER, Checkpoint, EventDelta, now_ms, record_error

logger = logging.getLogger(__name__)


@dataclass
class FastForwardPolicy:
    """Skip ahead when the most recent `probe_span` blocks hold no Transfer.

    This assumes a quiet recent range implies a quiet older one, which is not
    guaranteed; switch it off with FAST_FORWARD=false to scan every window.

    Only a target range longer than `probe_span` is probed, and a sync call
    never targets more than MAX_BLOCKS_PER_SYNC blocks. The policy therefore
    takes effect only when MAX_BLOCKS_PER_SYNC > PROBE_SPAN; with both at
    their 50,000 default every window is scanned.
    """

    enabled: bool = True
    probe_span: int = 50_000


def split_windows(start, end, size):
    windows = []
    current = start
    while current <= end:
        to_block = min(current + size - 1, end)
        windows.append((current, to_block))
        current = to_block + 1
    return windows


def topic_hex(topic):
    """Lower-case, 0x-prefixed hex of a log topic given as str or bytes."""
    value = (topic if isinstance(topic, str) else topic.hex()).lower()
    return value if value.startswith("0x") else "0x" + value


def _log_sort_key(log):
    return (int(log.get("blockNumber") or 0), int(log.get("logIndex") or 0))


def decode_transfer(log, collection):
    """Turn a raw Transfer log into a burn or transfer delta (None for non-ERC721 shapes)."""
    topics = log["topics"]
    if len(topics) < 4:
        return None
    _, from_t, to_t, id_t = topics[:4]
    sender = "0x" + topic_hex(from_t)[-40:]
    to = "0x" + topic_hex(to_t)[-40:]
    token_id = int(topic_hex(id_t), 16)
    kind = BURN if collection.is_burn_address(to) else TRANSFER
    block = log.get("blockNumber")
    return EventDelta(kind, token_id, to, sender, int(block) if block is not None else None)


class EventSyncEngine:
    def __init__(
        self,
        collection,
        reader,
        store,
        window_size=500,
        max_blocks=50_000,
        concurrency=5,
        fast_forward=None,
        range_ttl=86400,
        throttle=0.0,
    ):
        self.collection = collection
        self.reader = reader
        self.store = store
        self.window_size = window_size
        self.max_blocks = max_blocks
        self.concurrency = concurrency
        self.fast_forward = fast_forward or FastForwardPolicy()
        self.range_ttl = range_ttl
        self.throttle = throttle

    @classmethod
    def from_settings(cls, collection, reader, store, settings):
        return cls(
            collection,
            reader,
            store,
            window_size=settings.window_size,
            max_blocks=settings.max_blocks_per_sync,
            concurrency=settings.sync_concurrency,
            fast_forward=FastForwardPolicy(settings.fast_forward, settings.probe_span),
            range_ttl=settings.range_cache_ttl,
        )

    @property
    def address(self):
        return self.collection.address

    def target_range(self, checkpoint, head):
        # nothing before the deployment block can hold a Transfer
        start = max(checkpoint.last_processed_block + 1, self.collection.deployment_block or 0)
        end = min(head, start - 1 + self.max_blocks)
        return start, end

    def sync(self, checkpoint, head, error_log=None, on_progress=None):
        """Replay Transfer logs after `checkpoint` up to `head` (capped per call).

        Returns (deltas in block order, new checkpoint). A window that still
        fails after retries aborts the call; windows already fetched stay
        cached for the next attempt.
        """
        error_log = error_log if error_log is not None else []
        start, end = self.target_range(checkpoint, head)
        if start > end:
            logger.info(f"{self.collection.key}: no new blocks (checkpoint {checkpoint.last_processed_block}, head {head})")
            return [], Checkpoint(checkpoint.last_processed_block, now_ms())

        start = self._fast_forward(start, end)
        windows = split_windows(start, end, self.window_size)
        logger.info(f"{self.collection.key}: scanning blocks {start}-{end} in {len(windows)} windows (head {head})")

        started = time.time()
        done = 0
        results = []
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = [pool.submit(self._window_deltas, a, b, error_log) for a, b in windows]
            for future in futures:
                results.append(future.result())
                done += 1
                if on_progress:
                    on_progress(done, len(windows))
                if done % 20 == 0 or done == len(windows):
                    logger.info(f"{self.collection.key}: {done}/{len(windows)} windows, {time.time() - started:.1f}s elapsed")

        deltas = [delta for window in results for delta in window]
        burns = sum(1 for d in deltas if d.kind == BURN)
        logger.info(f"{self.collection.key}: {burns} burns, {len(deltas) - burns} transfers up to block {end}")
        return deltas, Checkpoint(end, now_ms())

    def _fast_forward(self, start, end):
        policy = self.fast_forward
        if not policy.enabled or end - start + 1 <= policy.probe_span:
            return start
        probe_start = end - policy.probe_span + 1
        try:
            logs = self.reader.get_logs(self.address, [TRANSFER_TOPIC], probe_start, end)
        except (ChainReadError, LogRangeTooLargeError) as e:
            logger.warning(f"{self.collection.key}: probe of blocks {probe_start}-{end} failed, scanning the full range: {e}")
            return start
        if logs:
            logger.info(f"{self.collection.key}: probe found {len(logs)} events in {probe_start}-{end}, scanning the full range")
            return start
        logger.info(f"{self.collection.key}: no events in {probe_start}-{end}, fast-forwarding from {start} to {probe_start}")
        return probe_start

    def _window_deltas(self, from_block, to_block, error_log):
        key = cache_key(self.collection.key, "events_range", self.address.lower(), from_block, to_block)
        cached = self.store.get(key)
        if cached is not None:
            logger.debug(f"Range cache hit: {key}")
            return [EventDelta.from_dict(d) for d in cached["deltas"]]

        try:
            logs = self._fetch_logs(from_block, to_block)
        except Exception as e:
            logger.error(f"{self.collection.key}: failed to fetch events for blocks {from_block}-{to_block}: {e}")
            record_error(error_log, "fetch_events", e, fromBlock=from_block, toBlock=to_block)
            raise

        deltas = []
        for log in sorted(logs, key=_log_sort_key):
            delta = decode_transfer(log, self.collection)
            if delta is not None:
                deltas.append(delta)
        self.store.set(
            key,
            {"deltas": [d.to_dict() for d in deltas], "lastBlock": to_block, "timestamp": now_ms()},
            ttl=self.range_ttl,
        )
        logger.debug(f"Fetched {len(logs)} events for blocks {from_block}-{to_block}")
        if self.throttle:
            time.sleep(self.throttle)
        return deltas

    def _fetch_logs(self, from_block, to_block):
        """Fetch [from_block..to_block], narrowing the query whenever the
        provider reports that the response would be too large."""
        logs = []
        current = from_block
        while current <= to_block:
            upper = to_block
            while True:
                try:
                    batch = self.reader.get_logs(self.address, [TRANSFER_TOPIC], current, upper)
                    break
                except LogRangeTooLargeError as e:
                    narrowed = self._narrow(e, current, upper)
                    logger.warning(f"{self.collection.key}: log response too large for {current}-{upper}, retrying {current}-{narrowed}")
                    upper = narrowed
            logs.extend(batch)
            current = upper + 1
        return logs

    @staticmethod
    def _narrow(error, current, upper):
        if error.suggested:
            _, suggested_to = error.suggested
            if current <= suggested_to < upper:
                return suggested_to
        if upper == current:
            raise ChainReadError(f"Log response for single block {current} exceeds the provider limit") from error
        return current + (upper - current) // 2
