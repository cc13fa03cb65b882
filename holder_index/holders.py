import logging
from dataclasses import dataclass
from typing import Optional

from web3.exceptions import ContractLogicError

from holder_index.abis import NFT_ABI
from holder_index.batching import run_batched
from holder_index.chain import Call
from holder_index.errors import ChainReadError
from holder_index.models import BURN, TRANSFER, Holder, HolderSnapshot, now_ms, record_error
from holder_index.rewards import rank_holders

logger = logging.getLogger(__name__)


class HolderBook:
    """Mutable holder map with a token → owner index.

    Each token id is owned by at most one holder or sits in `unclassified`,
    never both.
    """

    def __init__(self, holders=(), unclassified=None):
        self.holders = {}
        self.owner_of = {}
        self.unclassified = dict(unclassified or {})
        for holder in holders:
            self.holders[holder.wallet] = holder
            for token_id in holder.token_ids:
                self.owner_of[token_id] = holder.wallet

    @classmethod
    def from_snapshot(cls, snapshot):
        return cls(snapshot.holders, snapshot.unclassified)

    def remove(self, token_id):
        """Drop `token_id` from whoever owns it; returns that wallet (or None)."""
        self.unclassified.pop(token_id, None)
        wallet = self.owner_of.pop(token_id, None)
        if wallet is None:
            return None
        holder = self.holders[wallet]
        holder.remove_token(token_id)
        if not holder.token_ids:
            del self.holders[wallet]
        return wallet

    def add(self, token_id, wallet):
        self.remove(token_id)
        holder = self.holders.get(wallet)
        if holder is None:
            holder = self.holders[wallet] = Holder(wallet)
        holder.add_token(token_id)
        self.owner_of[token_id] = wallet

    def restore_unclassified(self):
        """Hand tokens whose tier could not be read last time back to their owners."""
        pending = self.unclassified
        self.unclassified = {}
        for token_id, wallet in pending.items():
            self.add(token_id, wallet)
        return set(pending.values())

    def set_aside(self, unclassified):
        """Move tokens the aggregator could not classify out of their holders."""
        for token_id, wallet in unclassified.items():
            holder = self.holders.get(wallet)
            if holder is not None:
                holder.remove_token(token_id)
            self.owner_of.pop(token_id, None)
            self.unclassified[token_id] = wallet
        for wallet in [w for w, h in self.holders.items() if not h.token_ids]:
            del self.holders[wallet]

    def live(self, wallets):
        return [self.holders[w] for w in sorted(wallets) if w in self.holders]

    @property
    def token_count(self):
        return len(self.owner_of) + len(self.unclassified)


def apply_burns(book, deltas):
    """Remove every burned token from its holder. Returns (touched wallets, burned ids)."""
    burned = {d.token_id for d in deltas if d.kind == BURN}
    touched = set()
    for token_id in sorted(burned):
        wallet = book.remove(token_id)
        if wallet:
            touched.add(wallet)
    return touched, burned


def apply_transfers(book, deltas, burned):
    """Replay transfers in event order. A token burned in the same batch stays burned."""
    touched = set()
    for delta in deltas:
        if delta.kind != TRANSFER or delta.token_id in burned:
            continue
        previous = book.remove(delta.token_id)
        if previous:
            touched.add(previous)
        if delta.sender and previous and previous != delta.sender:
            logger.warning(f"Token {delta.token_id} moved from {delta.sender} but was indexed under {previous}")
        book.add(delta.token_id, delta.to)
        touched.add(delta.to)
    return touched


@dataclass
class Supply:
    total_supply: int
    # mint counter or configured total; None when only totalSupply is known
    total_minted: Optional[int] = None
    # on-chain totalBurned(), None when the collection has no counter or it failed
    total_burned: Optional[int] = None

    def totals(self, live, previous_burned=None, replayed_burns=0):
        """(totalBurned, totalMinted) for a snapshot holding `live` tokens."""
        burned = self.total_burned
        if burned is None:
            if previous_burned is not None:
                burned = previous_burned + replayed_burns
            elif self.total_minted:
                burned = max(self.total_minted - live, 0)
            else:
                burned = 0
        return burned, self.total_minted or live + burned


class HolderReconstructor:
    def __init__(self, collection, reader, owner_source=None, batch_size=50, concurrency=3):
        self.collection = collection
        self.reader = reader
        self.owner_source = owner_source
        self.batch_size = batch_size
        self.concurrency = concurrency

    @classmethod
    def from_settings(cls, collection, reader, settings, owner_source=None):
        return cls(collection, reader, owner_source, settings.batch_size, settings.call_concurrency)

    def fetch_supply(self, error_log):
        c = self.collection
        supply = int(self.reader.read_contract(c.address, NFT_ABI, c.supply_function))
        if supply == 0:
            logger.warning(f"{c.key}: {c.supply_function}() returned 0, possible contract issue")

        burned = None
        if c.has_burn_counter:
            try:
                burned = int(self.reader.read_contract(c.address, NFT_ABI, "totalBurned"))
            except (ChainReadError, ContractLogicError) as e:
                logger.warning(f"{c.key}: totalBurned() failed: {e}")
                record_error(error_log, "fetch_burned", e)

        minted = c.total_minted
        if not minted and c.supply_function == "tokenId":
            # mint counter: every id up to it was minted once
            minted = supply
        logger.info(f"{c.key}: {c.supply_function}={supply}, burned={burned}, minted={minted}")
        return Supply(supply, minted, burned)

    def enumerate_owners(self, supply, error_log, on_progress=None):
        """Current owners as {wallet: [token ids]}, burn addresses excluded.

        Only a reverted `ownerOf` means burned or never minted. Calls that
        failed for any other reason get one more pass; if they still fail the
        rebuild is aborted rather than counting live tokens as burned.
        """
        c = self.collection
        if self.owner_source is not None:
            owners = self.owner_source.get_owners(c.address)
        else:
            owners = self._owners_by_token(supply.total_minted or supply.total_supply, error_log, on_progress)

        cleaned = {}
        for wallet, token_ids in owners.items():
            if c.is_burn_address(wallet):
                continue
            ids = [t for t in token_ids if not supply.total_minted or t <= supply.total_minted]
            if ids:
                cleaned[wallet.lower()] = sorted(ids)

        live = sum(len(ids) for ids in cleaned.values())
        if c.supply_function == "totalSupply" and live != supply.total_supply:
            message = f"resolved {live} live tokens but totalSupply() is {supply.total_supply}"
            logger.warning(f"{c.key}: {message}")
            record_error(error_log, "fetch_owners", message)
        return cleaned

    def _owners_by_token(self, upper, error_log, on_progress):
        c = self.collection
        token_ids = list(range(1, upper + 1))
        results = run_batched(self.reader, self._owner_calls(token_ids), self.batch_size, self.concurrency, on_progress)
        resolved = dict(zip(token_ids, results))

        failed = [t for t, r in resolved.items() if not r.success and not r.reverted]
        if failed:
            logger.warning(f"{c.key}: ownerOf failed without a revert for {len(failed)} tokens, retrying them")
            retried = run_batched(self.reader, self._owner_calls(failed), self.batch_size, self.concurrency)
            resolved.update(zip(failed, retried))
            failed = [t for t in failed if not resolved[t].success and not resolved[t].reverted]
        if failed:
            error = resolved[failed[0]].error
            record_error(error_log, "fetch_owners", error, tokenIds=failed)
            raise ChainReadError(f"{c.key}: ownerOf could not be read for {len(failed)} tokens: {error}")

        owners = {}
        missing = 0
        for token_id, result in resolved.items():
            if not result.success:
                # burned and never-minted ids revert
                missing += 1
                continue
            owners.setdefault(str(result.value).lower(), []).append(token_id)
        logger.info(f"{c.key}: ownerOf resolved {upper - missing}/{upper} tokens")
        return owners

    def _owner_calls(self, token_ids):
        return [Call(self.collection.address, NFT_ABI, "ownerOf", (token_id,)) for token_id in token_ids]

    def rebuild(self, owners):
        return HolderBook([Holder(wallet, list(token_ids)) for wallet, token_ids in owners.items()])


def build_snapshot(collection, holders, unclassified, total_burned, total_minted, block):
    """Rank holders and derive the summary figures of a committed snapshot."""
    holders = list(holders)
    pool = rank_holders(holders)
    distribution = [0] * collection.tier_count
    for holder in holders:
        for i, count in enumerate(holder.tiers):
            distribution[i] += count
    return HolderSnapshot(
        holders=holders,
        total_burned=total_burned,
        total_minted=total_minted,
        tier_distribution=distribution,
        multiplier_pool=pool,
        unclassified=dict(unclassified),
        block=block,
        timestamp=now_ms(),
    )
