"""Population state machine for one collection.

A run either rebuilds the holder index from live ownership (no snapshot yet,
or a forced update) or replays the Transfer events since the snapshot's block
on top of it. Progress is written to `{collection}_state` before each phase so
the progress endpoint can follow along, and the new snapshot only replaces
`{collection}_holders` once the whole run succeeded.
"""

import logging
import time

from holder_index.cache import cache_key
from holder_index.errors import ConfigurationError, LeaseLostError
from holder_index.events import EventSyncEngine
from holder_index.holders import HolderBook, HolderReconstructor, apply_burns, apply_transfers, build_snapshot
from holder_index.models import Checkpoint, HolderSnapshot, ProgressState, Step, now_ms, record_error
from holder_index.rewards import TierRewardAggregator

logger = logging.getLogger(__name__)

STARTED = "started"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "error"


class PopulationOrchestrator:
    def __init__(self, collection, reader, store, lock, sync_engine, reconstructor, aggregator, progress_interval=1.0):
        self.collection = collection
        self.reader = reader
        self.store = store
        self.lock = lock
        self.sync_engine = sync_engine
        self.reconstructor = reconstructor
        self.aggregator = aggregator
        self.progress_interval = progress_interval
        self._last_progress_save = 0.0

    @classmethod
    def from_settings(cls, collection, reader, store, lock, settings, owner_source=None):
        return cls(
            collection,
            reader,
            store,
            lock,
            EventSyncEngine.from_settings(collection, reader, store, settings),
            HolderReconstructor.from_settings(collection, reader, settings, owner_source),
            TierRewardAggregator.from_settings(collection, reader, settings),
        )

    @property
    def key(self):
        return self.collection.key

    @property
    def state_key(self):
        return cache_key(self.key, "state")

    @property
    def snapshot_key(self):
        return cache_key(self.key, "holders")

    def load_state(self):
        data = self.store.get(self.state_key)
        return ProgressState.from_dict(data) if data else ProgressState()

    def save_state(self, state):
        self.store.set(self.state_key, state.to_dict())

    def load_snapshot(self):
        data = self.store.get(self.snapshot_key)
        if data is None:
            return None
        if not HolderSnapshot.is_valid(data):
            logger.warning(f"{self.key}: cached snapshot is malformed, ignoring it")
            return None
        return HolderSnapshot.from_dict(data)

    def populate(self, force_update=False, lock_held=False):
        """Run one population. Returns {"status": completed|error|in_progress}.

        With `lock_held` the caller already owns the collection lock; it is
        released here either way once the run ends.
        """
        if not lock_held and not self.lock.try_acquire(self.key):
            logger.info(f"{self.key}: population already in progress")
            return {"status": IN_PROGRESS}
        try:
            return self._run(force_update)
        finally:
            self.lock.release(self.key)

    def _keep_lease(self):
        if not self.lock.renew(self.key):
            raise LeaseLostError(f"{self.key}: lost the population lease")

    def _advance(self, state, step, total=0):
        self._keep_lease()
        state.step = step.value
        state.processed_count = 0
        state.total_count = total
        self.save_state(state)
        self._last_progress_save = time.monotonic()
        logger.info(f"{self.key}: {step.value}")

    def _progress(self, state):
        def update(processed, total):
            state.processed_count = processed
            state.total_count = total
            now = time.monotonic()
            if processed >= total or now - self._last_progress_save >= self.progress_interval:
                self._keep_lease()
                self.save_state(state)
                self._last_progress_save = now

        return update

    def _run(self, force_update):
        previous = self.load_state()
        if previous.is_populating:
            logger.warning(f"{self.key}: previous run stopped during {previous.step}, restarting from the committed snapshot")

        error_log = []
        state = ProgressState(
            step=Step.STARTING.value,
            is_populating=True,
            started_at=now_ms(),
            last_processed_block=previous.last_processed_block,
            last_updated=previous.last_updated,
            total_holders=previous.total_holders,
        )
        self.save_state(state)
        started = time.time()

        try:
            self.collection.validate()
            snapshot = None if force_update else self.load_snapshot()

            self._advance(state, Step.FETCHING_SUPPLY)
            head = self.reader.get_head_block()
            supply = self.reconstructor.fetch_supply(error_log)

            if snapshot is None:
                logger.info(f"{self.key}: full rebuild at block {head}" + (" (forced)" if force_update else ""))
                result = self._full(state, supply, head, error_log)
            else:
                result = self._incremental(state, snapshot, supply, head, error_log)

            self._advance(state, Step.FINALIZING_CACHE, total=1)
            self.store.set(self.snapshot_key, result.to_dict())
        except LeaseLostError as e:
            # the new lease holder owns the progress record now
            logger.error(f"{self.key}: {e}, abandoning the run without committing")
            return {"status": FAILED, "error": str(e)}
        except ConfigurationError as e:
            logger.error(f"{self.key}: configuration error: {e}")
            return self._fail(state, error_log, e)
        except Exception as e:
            logger.exception(f"{self.key}: population failed during {state.step}: {e}")
            return self._fail(state, error_log, e)

        state.step = Step.COMPLETED.value
        state.processed_count = state.total_count = 1
        state.is_populating = False
        state.error = None
        state.error_log = error_log
        state.last_processed_block = result.block
        state.last_updated = result.timestamp
        state.total_holders = len(result.holders)
        self.save_state(state)
        logger.info(
            f"{self.key}: completed at block {result.block} with {len(result.holders)} holders, "
            f"{result.total_live} live tokens, {len(error_log)} recovered errors in {time.time() - started:.1f}s"
        )
        return {"status": COMPLETED}

    def _fail(self, state, error_log, error):
        record_error(error_log, state.step, error)
        state.step = Step.ERROR.value
        state.error = str(error)
        state.error_log = error_log
        state.is_populating = False
        self.save_state(state)
        return {"status": FAILED, "error": str(error)}

    def _full(self, state, supply, head, error_log):
        self._advance(state, Step.FETCHING_OWNERS, total=supply.total_minted or supply.total_supply)
        owners = self.reconstructor.enumerate_owners(supply, error_log, self._progress(state))
        book = self.reconstructor.rebuild(owners)
        logger.info(f"{self.key}: {len(book.holders)} owners hold {book.token_count} tokens")

        self._advance(state, Step.PROCESSING_HOLDERS, total=book.token_count)
        holders, unclassified = self.aggregator.aggregate(list(book.holders.values()), error_log, self._progress(state))
        book.set_aside(unclassified)

        burned, minted = supply.totals(book.token_count)
        return build_snapshot(self.collection, book.holders.values(), book.unclassified, burned, minted, head)

    def _incremental(self, state, snapshot, supply, head, error_log):
        self._advance(state, Step.FETCHING_EVENTS)
        checkpoint = Checkpoint(snapshot.block, snapshot.timestamp)
        deltas, checkpoint = self.sync_engine.sync(checkpoint, head, error_log, self._progress(state))

        book = HolderBook.from_snapshot(snapshot)
        if not deltas and not book.unclassified:
            logger.info(f"{self.key}: no holder changes up to block {checkpoint.last_processed_block}")
            snapshot.block = checkpoint.last_processed_block
            snapshot.timestamp = now_ms()
            return snapshot

        self._advance(state, Step.PROCESSING_EVENTS, total=len(deltas))
        touched, burned = apply_burns(book, deltas)
        logger.info(f"{self.key}: {len(burned)} burns touched {len(touched)} holders")

        self._advance(state, Step.PROCESSING_TRANSFERS, total=len(deltas))
        touched |= apply_transfers(book, deltas, burned)
        touched |= book.restore_unclassified()
        changed = book.live(touched)
        logger.info(f"{self.key}: re-aggregating {len(changed)} holders")
        _, unclassified = self.aggregator.aggregate(changed, error_log, self._progress(state))
        book.set_aside(unclassified)

        total_burned, minted = supply.totals(
            book.token_count, previous_burned=snapshot.total_burned, replayed_burns=len(burned)
        )
        return build_snapshot(
            self.collection, book.holders.values(), book.unclassified, total_burned, minted, checkpoint.last_processed_block
        )
