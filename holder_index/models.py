"""Holder index data model.

Everything here round-trips through plain JSON documents (camelCase keys) so
it can sit in any cache backend and be served as-is by the API.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

BURN = "burn"
TRANSFER = "transfer"


def now_ms():
    return int(time.time() * 1000)


class Step(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    FETCHING_SUPPLY = "fetching_supply"
    FETCHING_OWNERS = "fetching_owners"
    FETCHING_EVENTS = "fetching_events"
    PROCESSING_HOLDERS = "processing_holders"
    PROCESSING_EVENTS = "processing_events"
    PROCESSING_TRANSFERS = "processing_transfers"
    FINALIZING_CACHE = "finalizing_cache"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class Checkpoint:
    last_processed_block: int
    last_updated: Optional[int] = None

    def to_dict(self):
        return {"lastProcessedBlock": self.last_processed_block, "lastUpdated": self.last_updated}

    @classmethod
    def from_dict(cls, data):
        return cls(data["lastProcessedBlock"], data.get("lastUpdated"))


@dataclass
class EventDelta:
    kind: str
    token_id: int
    to: str
    sender: Optional[str] = None
    block: Optional[int] = None

    def to_dict(self):
        return {"kind": self.kind, "tokenId": self.token_id, "from": self.sender, "to": self.to, "block": self.block}

    @classmethod
    def from_dict(cls, data):
        return cls(data["kind"], int(data["tokenId"]), data["to"], data.get("from"), data.get("block"))


@dataclass
class Holder:
    wallet: str
    token_ids: List[int] = field(default_factory=list)
    tiers: List[int] = field(default_factory=list)
    multiplier_sum: float = 0
    rewards: Dict[str, float] = field(default_factory=dict)
    percentage: float = 0.0
    rank: int = 0

    @property
    def total(self):
        return len(self.token_ids)

    def add_token(self, token_id):
        if token_id not in self.token_ids:
            self.token_ids.append(token_id)

    def remove_token(self, token_id):
        if token_id in self.token_ids:
            self.token_ids.remove(token_id)
            return True
        return False

    def to_dict(self):
        data = {
            "wallet": self.wallet,
            "tokenIds": sorted(self.token_ids),
            "total": self.total,
            "tiers": list(self.tiers),
            "multiplierSum": self.multiplier_sum,
            "percentage": self.percentage,
            "rank": self.rank,
        }
        data.update(self.rewards)
        return data

    @classmethod
    def from_dict(cls, data):
        known = {"wallet", "tokenIds", "total", "tiers", "multiplierSum", "percentage", "rank"}
        return cls(
            wallet=data["wallet"],
            token_ids=[int(t) for t in data.get("tokenIds", [])],
            tiers=list(data.get("tiers", [])),
            multiplier_sum=data.get("multiplierSum", 0),
            rewards={k: v for k, v in data.items() if k not in known},
            percentage=data.get("percentage", 0.0),
            rank=data.get("rank", 0),
        )


@dataclass
class HolderSnapshot:
    holders: List[Holder]
    total_burned: int = 0
    total_minted: int = 0
    tier_distribution: List[int] = field(default_factory=list)
    multiplier_pool: float = 0
    unclassified: Dict[int, str] = field(default_factory=dict)
    block: int = 0
    timestamp: int = field(default_factory=now_ms)

    @property
    def total_live(self):
        return sum(h.total for h in self.holders) + len(self.unclassified)

    def holder_map(self):
        return {h.wallet: h for h in self.holders}

    def summary(self):
        return {
            "totalLive": self.total_live,
            "totalBurned": self.total_burned,
            "totalMinted": self.total_minted,
            "totalHolders": len(self.holders),
            "tierDistribution": list(self.tier_distribution),
            "multiplierPool": self.multiplier_pool,
            "unclassifiedTokens": len(self.unclassified),
        }

    def to_dict(self):
        return {
            "holders": [h.to_dict() for h in self.holders],
            "totalBurned": self.total_burned,
            "totalMinted": self.total_minted,
            "tierDistribution": list(self.tier_distribution),
            "multiplierPool": self.multiplier_pool,
            # JSON object keys are strings
            "unclassified": {str(k): v for k, v in self.unclassified.items()},
            "block": self.block,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            holders=[Holder.from_dict(h) for h in data.get("holders", [])],
            total_burned=data.get("totalBurned", 0),
            total_minted=data.get("totalMinted", 0),
            tier_distribution=list(data.get("tierDistribution", [])),
            multiplier_pool=data.get("multiplierPool", 0),
            unclassified={int(k): v for k, v in data.get("unclassified", {}).items()},
            block=data.get("block", 0),
            timestamp=data.get("timestamp", 0),
        )

    @staticmethod
    def is_valid(data):
        return isinstance(data, dict) and isinstance(data.get("holders"), list) and isinstance(data.get("totalBurned"), int)


@dataclass
class ProgressState:
    step: str = Step.IDLE.value
    processed_count: int = 0
    total_count: int = 0
    error: Optional[str] = None
    error_log: List[dict] = field(default_factory=list)
    is_populating: bool = False
    last_processed_block: Optional[int] = None
    last_updated: Optional[int] = None
    total_holders: int = 0
    started_at: Optional[int] = None

    @property
    def progress_percentage(self):
        if self.step == Step.COMPLETED.value:
            return 100.0
        if not self.total_count:
            return 0.0
        return round(min(self.processed_count / self.total_count, 1.0) * 100, 1)

    def to_dict(self):
        return {
            "step": self.step,
            "processedCount": self.processed_count,
            "totalCount": self.total_count,
            "progressPercentage": self.progress_percentage,
            "error": self.error,
            "errorLog": list(self.error_log),
            "isPopulating": self.is_populating,
            "lastProcessedBlock": self.last_processed_block,
            "lastUpdated": self.last_updated,
            "totalHolders": self.total_holders,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            step=data.get("step", Step.IDLE.value),
            processed_count=data.get("processedCount", 0),
            total_count=data.get("totalCount", 0),
            error=data.get("error"),
            error_log=list(data.get("errorLog", [])),
            is_populating=data.get("isPopulating", False),
            last_processed_block=data.get("lastProcessedBlock"),
            last_updated=data.get("lastUpdated"),
            total_holders=data.get("totalHolders", 0),
            started_at=data.get("startedAt"),
        )


def record_error(error_log, phase, error, **fields):
    """Append a recovered (or fatal) error to a run's error log."""
    entry = {"timestamp": now_ms(), "phase": phase, "error": str(error)}
    entry.update({k: v for k, v in fields.items() if v is not None})
    error_log.append(entry)
    return entry
