import logging
import math
import re
import threading
from concurrent.futures import ThreadPoolExecutor

from holder_index.abis import TRANSFER_TOPIC
from holder_index.cache import cache_key, make_cache_store
from holder_index.catalog import load_collections
from holder_index.chain import AlchemyOwnerSource, Web3ChainReader
from holder_index.config import Settings
from holder_index.errors import ConfigurationError, InvalidRequestError, TransactionNotFoundError, UnknownCollectionError
from holder_index.events import decode_transfer, topic_hex
from holder_index.locks import make_lock
from holder_index.models import BURN
from holder_index.population import IN_PROGRESS, STARTED, PopulationOrchestrator

logger = logging.getLogger(__name__)

TX_HASH = re.compile(r"^0x[0-9a-fA-F]{64}$")


class HolderIndexService:
    """Read side of the index plus the trigger that refreshes it.

    Reads always come from the last committed snapshot; populations run on a
    small background executor so a trigger returns immediately.
    """

    def __init__(self, settings, reader, store, lock, collections, owner_source=None, executor=None):
        self.settings = settings
        self.reader = reader
        self.store = store
        self.lock = lock
        self.collections = collections
        self.owner_source = owner_source
        self.executor = executor or ThreadPoolExecutor(max_workers=max(1, len(collections)), thread_name_prefix="populate")
        self._orchestrators = {}
        self._guard = threading.Lock()

    @classmethod
    def from_settings(cls, settings=None):
        settings = settings or Settings.from_env()
        reader = Web3ChainReader.from_settings(settings)
        store = make_cache_store(settings)
        owner_source = None
        if settings.alchemy_api_key:
            owner_source = AlchemyOwnerSource(
                settings.alchemy_api_key, settings.alchemy_network, reader.retry, timeout=settings.rpc_timeout
            )
        logger.info(f"Holder index using {settings.cache_backend} cache, {settings.lock_backend} lock, RPC {settings.rpc_url}")
        return cls(settings, reader, store, make_lock(settings, store), load_collections(settings.collections_file), owner_source)

    def collection(self, key):
        collection = self.collections.get((key or "").lower())
        if collection is None:
            raise UnknownCollectionError(f"Unknown collection {key!r}")
        return collection

    def orchestrator(self, key):
        collection = self.collection(key)
        with self._guard:
            orchestrator = self._orchestrators.get(collection.key)
            if orchestrator is None:
                orchestrator = PopulationOrchestrator.from_settings(
                    collection, self.reader, self.store, self.lock, self.settings, self.owner_source
                )
                self._orchestrators[collection.key] = orchestrator
        return orchestrator

    def list_holders(self, collection, page=0, page_size=None, wallet=None):
        """One 0-based page of ranked holders with the snapshot summary.

        Without a committed snapshot a population is triggered and the
        response carries its status instead of holders.
        """
        orchestrator = self.orchestrator(collection)
        page_size = page_size or orchestrator.collection.page_size
        snapshot = orchestrator.load_snapshot()
        if snapshot is None:
            logger.info(f"{orchestrator.key}: no snapshot yet, triggering population")
            status = self.trigger_population(collection)["status"]
            return {"status": status, "holders": [], "page": page, "pageSize": page_size, "totalPages": 0}

        holders = snapshot.holders
        if wallet:
            holders = [h for h in holders if h.wallet == wallet.lower()]
        start = page * page_size
        response = {
            "holders": [h.to_dict() for h in holders[start : start + page_size]],
            "page": page,
            "pageSize": page_size,
            "totalPages": math.ceil(len(holders) / page_size),
            "block": snapshot.block,
            "timestamp": snapshot.timestamp,
        }
        response.update(snapshot.summary())
        return response

    def get_holder(self, collection, wallet):
        snapshot = self.orchestrator(collection).load_snapshot()
        if snapshot is None:
            return None
        holder = snapshot.holder_map().get(wallet.lower())
        return holder.to_dict() if holder else None

    def get_progress(self, collection):
        orchestrator = self.orchestrator(collection)
        progress = orchestrator.load_state().to_dict()
        progress["collection"] = orchestrator.key
        return progress

    def trigger_population(self, collection, force_update=False):
        orchestrator = self.orchestrator(collection)
        if not self.lock.try_acquire(orchestrator.key):
            logger.info(f"{orchestrator.key}: population already in progress")
            return {"status": IN_PROGRESS}
        try:
            self.executor.submit(orchestrator.populate, force_update, True)
        except RuntimeError:
            self.lock.release(orchestrator.key)
            raise
        logger.info(f"{orchestrator.key}: population started (forceUpdate={force_update})")
        return {"status": STARTED}

    def validate_burn(self, collection, tx_hash):
        """Token ids burned by one transaction, read from its receipt.

        Results are cached per transaction hash; a mined receipt never changes.
        """
        if not isinstance(tx_hash, str) or not TX_HASH.match(tx_hash):
            raise InvalidRequestError(f"Invalid transaction hash: {tx_hash!r}")
        c = self.collection(collection)
        if not c.address:
            raise ConfigurationError(f"{c.key} has no contract address configured")

        key = cache_key(c.key, "burn_validation", tx_hash.lower())
        cached = self.store.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for burn validation: {tx_hash}")
            return cached

        receipt = self.reader.get_transaction_receipt(tx_hash)
        if receipt is None:
            logger.warning(f"{c.key}: transaction receipt not found for {tx_hash}")
            raise TransactionNotFoundError(f"Transaction {tx_hash} not found")

        burned = []
        for log in receipt["logs"]:
            topics = log.get("topics") or []
            if str(log.get("address", "")).lower() != c.address.lower() or not topics:
                continue
            if topic_hex(topics[0]) != TRANSFER_TOPIC:
                continue
            delta = decode_transfer(log, c)
            if delta is not None and delta.kind == BURN:
                burned.append(delta.token_id)
        if not burned:
            logger.warning(f"{c.key}: no burn events found in transaction {tx_hash}")
            raise InvalidRequestError("No burn events found in transaction")

        result = {"transactionHash": tx_hash, "burnedTokenIds": burned, "blockNumber": int(receipt["blockNumber"])}
        self.store.set(key, result, ttl=self.settings.burn_validation_ttl)
        logger.info(f"{c.key}: transaction {tx_hash} burned {len(burned)} tokens")
        return result

    def initialize(self):
        """Start a population for every enabled, fully configured collection."""
        statuses = {}
        for key, collection in self.collections.items():
            try:
                collection.validate()
            except ConfigurationError as e:
                logger.info(f"{key}: skipped at initialization: {e}")
                statuses[key] = "skipped"
                continue
            statuses[key] = self.trigger_population(key)["status"]
        logger.info(f"Initialization triggered: {statuses}")
        return statuses

    def shutdown(self, wait=True):
        self.executor.shutdown(wait=wait)
