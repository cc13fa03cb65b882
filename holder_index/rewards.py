import logging

from web3 import Web3

from holder_index.abis import CYCLE_VAULT_ABI, NFT_ABI, POOL_VAULT_ABI
from holder_index.batching import run_batched
from holder_index.catalog import CYCLE, POOL, SHARE_VESTED
from holder_index.chain import Call
from holder_index.errors import ConfigurationError
from holder_index.models import record_error

logger = logging.getLogger(__name__)

WEI = 10**18


def from_wei(value):
    return int(value or 0) / WEI


def multiplier_sum(tiers, collection):
    return sum(count * collection.multiplier(i + 1) for i, count in enumerate(tiers))


def rank_holders(holders):
    """Sort by multiplier sum then token count (both descending), assign 1-based
    ranks and each holder's share of the multiplier pool. Returns the pool."""
    pool = sum(h.multiplier_sum for h in holders)
    holders.sort(key=lambda h: (-h.multiplier_sum, -h.total))
    for rank, holder in enumerate(holders, start=1):
        holder.rank = rank
        holder.percentage = holder.multiplier_sum / pool * 100 if pool > 0 else 0.0
    return pool


class RewardStrategy:
    """How one collection's per-holder reward figures are read from chain."""

    fields = ()

    def __init__(self, collection):
        self.collection = collection

    def empty(self):
        return {name: 0.0 for name in self.fields}

    def prepare(self, reader, error_log):
        pass

    def holder_calls(self, holder):
        raise NotImplementedError

    def apply(self, holder, results, error_log):
        raise NotImplementedError


class PoolBasedRewards(RewardStrategy):
    fields = ("claimableRewards",)

    def holder_calls(self, holder):
        args = (list(holder.token_ids), Web3.to_checksum_address(holder.wallet))
        return [Call(self.collection.vault_address, POOL_VAULT_ABI, "getRewards", args)]

    def apply(self, holder, results, error_log):
        rewards = self.empty()
        result = results[0]
        if result.success:
            rewards["claimableRewards"] = from_wei(result.value[1])
        else:
            logger.warning(f"Failed to fetch claimable rewards for {holder.wallet}: {result.error}")
            record_error(error_log, "fetch_rewards", result.error, wallet=holder.wallet)
        holder.rewards = rewards


class CycleBasedRewards(RewardStrategy):
    fields = ("infernoRewards", "fluxRewards", "e280Rewards")

    def holder_calls(self, holder):
        args = (list(holder.token_ids), Web3.to_checksum_address(holder.wallet), False)
        return [Call(self.collection.vault_address, CYCLE_VAULT_ABI, "getRewards", args)]

    def apply(self, holder, results, error_log):
        rewards = self.empty()
        result = results[0]
        if result.success:
            _, _, inferno, flux, e280 = result.value
            rewards.update(infernoRewards=from_wei(inferno), fluxRewards=from_wei(flux), e280Rewards=from_wei(e280))
        else:
            logger.warning(f"Failed to fetch cycle rewards for {holder.wallet}: {result.error}")
            record_error(error_log, "fetch_rewards", result.error, wallet=holder.wallet)
        holder.rewards = rewards


class ShareVestedRewards(RewardStrategy):
    """Claimable amount per wallet, shares per token, and pending rewards for
    the 8/28/90-day pools derived from the global `toDistribute` amounts."""

    fields = ("shares", "lockedAmount", "claimableRewards", "pendingDay8", "pendingDay28", "pendingDay90")
    POOLS = ((0, "pendingDay8"), (1, "pendingDay28"), (2, "pendingDay90"))

    def __init__(self, collection):
        super().__init__(collection)
        self.reward_per_share = {name: 0.0 for _, name in self.POOLS}

    def prepare(self, reader, error_log):
        address = self.collection.address
        calls = [Call(address, NFT_ABI, "totalShares")]
        calls += [Call(address, NFT_ABI, "toDistribute", (pool,)) for pool, _ in self.POOLS]
        results = reader.batch_call(calls)
        failed = [(c, r) for c, r in zip(calls, results) if not r.success]
        for call, result in failed:
            logger.warning(f"Failed to read {call.function}{tuple(call.args)}: {result.error}")
            record_error(error_log, "fetch_globals", result.error, function=call.function)

        total_shares = from_wei(results[0].value) if results[0].success else 0
        for (pool, name), result in zip(self.POOLS, results[1:]):
            to_distribute = from_wei(result.value) if result.success else 0
            self.reward_per_share[name] = to_distribute / total_shares if total_shares > 0 else 0.0
        logger.info(f"{self.collection.key}: totalShares={total_shares}, pending per share={self.reward_per_share}")

    def holder_calls(self, holder):
        address = self.collection.address
        calls = [Call(address, NFT_ABI, "batchClaimableAmount", (list(holder.token_ids),))]
        calls += [Call(address, NFT_ABI, "userRecords", (token_id,)) for token_id in holder.token_ids]
        return calls

    def apply(self, holder, results, error_log):
        rewards = self.empty()
        claimable, records = results[0], results[1:]
        if claimable.success:
            rewards["claimableRewards"] = from_wei(claimable.value)
        else:
            logger.warning(f"Failed to fetch claimable rewards for {holder.wallet}: {claimable.error}")
            record_error(error_log, "fetch_rewards", claimable.error, wallet=holder.wallet)

        for token_id, record in zip(holder.token_ids, records):
            if not record.success:
                record_error(error_log, "fetch_records", record.error, tokenId=token_id, wallet=holder.wallet)
                continue
            rewards["shares"] += from_wei(record.value[0])
            rewards["lockedAmount"] += from_wei(record.value[1])

        for _, name in self.POOLS:
            rewards[name] = rewards["shares"] * self.reward_per_share[name]
        holder.rewards = rewards


STRATEGIES = {
    POOL: PoolBasedRewards,
    CYCLE: CycleBasedRewards,
    SHARE_VESTED: ShareVestedRewards,
}


def strategy_for(collection):
    try:
        return STRATEGIES[collection.reward_strategy](collection)
    except KeyError:
        raise ConfigurationError(f"{collection.key}: unknown reward strategy {collection.reward_strategy!r}") from None


class TierRewardAggregator:
    def __init__(self, collection, reader, strategy=None, batch_size=50, concurrency=3):
        self.collection = collection
        self.reader = reader
        self.strategy = strategy or strategy_for(collection)
        self.batch_size = batch_size
        self.concurrency = concurrency

    @classmethod
    def from_settings(cls, collection, reader, settings):
        return cls(collection, reader, batch_size=settings.batch_size, concurrency=settings.call_concurrency)

    def run_batched(self, calls, on_progress=None):
        return run_batched(self.reader, calls, self.batch_size, self.concurrency, on_progress)

    def _tier_call(self, token_id):
        return Call(self.collection.address, NFT_ABI, self.collection.tier_function, (token_id,))

    def _tier_value(self, result):
        if not result.success:
            return None, result.error
        value = result.value
        index = self.collection.tier_attribute_index
        try:
            tier = int(value[index] if index is not None else value)
        except (TypeError, ValueError, IndexError) as e:
            return None, f"Malformed tier result {value!r}: {e}"
        if tier not in self.collection.tiers:
            return None, f"Invalid tier {tier}"
        return tier, None

    def aggregate(self, holders, error_log, on_progress=None):
        """Recompute tiers, multiplier sums and reward figures of `holders` from chain.

        Returns (holders that still hold a classified token, {token id: wallet}
        for tokens whose tier could not be read).
        """
        tokens = [(holder, token_id) for holder in holders for token_id in holder.token_ids]
        logger.info(f"{self.collection.key}: fetching tiers for {len(tokens)} tokens of {len(holders)} holders")
        results = self.run_batched([self._tier_call(t) for _, t in tokens], on_progress)

        unclassified = {}
        for holder in holders:
            holder.tiers = [0] * self.collection.tier_count
        for (holder, token_id), result in zip(tokens, results):
            tier, error = self._tier_value(result)
            if tier is None:
                logger.warning(f"Failed to fetch tier for tokenId {token_id}: {error}")
                record_error(error_log, "fetch_tier", error, tokenId=token_id, wallet=holder.wallet)
                unclassified[token_id] = holder.wallet
                continue
            holder.tiers[tier - 1] += 1

        kept = []
        for holder in holders:
            holder.token_ids = [t for t in holder.token_ids if t not in unclassified]
            if holder.token_ids:
                holder.multiplier_sum = multiplier_sum(holder.tiers, self.collection)
                kept.append(holder)

        self._rewards(kept, error_log)
        return kept, unclassified

    def _rewards(self, holders, error_log):
        if not holders:
            return
        self.strategy.prepare(self.reader, error_log)
        per_holder = [self.strategy.holder_calls(h) for h in holders]
        flat = [call for calls in per_holder for call in calls]
        logger.info(f"{self.collection.key}: fetching rewards with {len(flat)} calls")
        results = self.run_batched(flat)
        offset = 0
        for holder, calls in zip(holders, per_holder):
            self.strategy.apply(holder, results[offset : offset + len(calls)], error_log)
            offset += len(calls)
