import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from holder_index.abis import DEAD_ADDRESS, ZERO_ADDRESS
from holder_index.errors import ConfigurationError

logger = logging.getLogger(__name__)

POOL = "pool"
CYCLE = "cycle"
SHARE_VESTED = "share_vested"
VAULT_STRATEGIES = (POOL, CYCLE)


@dataclass(frozen=True)
class Tier:
    name: str
    multiplier: float


@dataclass(frozen=True)
class CollectionConfig:
    key: str
    name: str
    address: Optional[str]
    deployment_block: int = 0
    tiers: Dict[int, Tier] = field(default_factory=dict)
    reward_strategy: str = POOL
    vault_address: Optional[str] = None
    tier_function: str = "getNftTier"
    # getNFTAttribute returns a tuple; the tier sits at this index
    tier_attribute_index: Optional[int] = None
    supply_function: str = "totalSupply"
    has_burn_counter: bool = False
    total_minted: Optional[int] = None
    page_size: int = 1000
    burn_addresses: Tuple[str, ...] = (ZERO_ADDRESS, DEAD_ADDRESS)
    disabled: bool = False

    @property
    def tier_count(self):
        return max(self.tiers) if self.tiers else 0

    def multiplier(self, tier_id):
        tier = self.tiers.get(tier_id)
        return tier.multiplier if tier else 0

    def is_burn_address(self, address):
        return address.lower() in {a.lower() for a in self.burn_addresses}

    def validate(self):
        if self.disabled:
            raise ConfigurationError(f"{self.key} is disabled")
        missing = []
        if not self.address:
            missing.append("address")
        if not self.tiers:
            missing.append("tiers")
        if self.reward_strategy in VAULT_STRATEGIES and not self.vault_address:
            missing.append("vault_address")
        if self.reward_strategy not in VAULT_STRATEGIES + (SHARE_VESTED,):
            missing.append(f"reward_strategy ({self.reward_strategy!r} is not supported)")
        if missing:
            raise ConfigurationError(f"{self.key} configuration missing: {', '.join(missing)}")

    @classmethod
    def from_dict(cls, key, data):
        tiers = {int(tid): Tier(t["name"], t["multiplier"]) for tid, t in (data.get("tiers") or {}).items()}
        kwargs = {
            "key": key.lower(),
            "name": data.get("name", key),
            "address": data.get("address"),
            "deployment_block": int(data.get("deploymentBlock") or 0),
            "tiers": tiers,
            "reward_strategy": data.get("rewardStrategy", POOL),
            "vault_address": data.get("vaultAddress"),
            "tier_function": data.get("tierFunction", "getNftTier"),
            "tier_attribute_index": data.get("tierAttributeIndex"),
            "supply_function": data.get("supplyFunction", "totalSupply"),
            "has_burn_counter": data.get("hasBurnCounter", False),
            "total_minted": data.get("totalMinted"),
            "page_size": data.get("pageSize", 1000),
            "disabled": data.get("disabled", False),
        }
        if data.get("burnAddresses"):
            kwargs["burn_addresses"] = tuple(data["burnAddresses"])
        return cls(**kwargs)


def _tiers(*rows):
    return {i: {"name": name, "multiplier": mult} for i, (name, mult) in enumerate(rows, start=1)}


DEFAULT_COLLECTIONS = {
    "element280": {
        "name": "Element 280",
        "address": "0x7F090d101936008a26Bf1F0a22a5f92fC0Cf46c9",
        "vaultAddress": "0x44c4ADAc7d88f85d3D33A7f856Ebc54E60C31E97",
        "deploymentBlock": 20945304,
        "rewardStrategy": POOL,
        "tiers": _tiers(
            ("Common", 10), ("Common Amped", 12), ("Rare", 100),
            ("Rare Amped", 120), ("Legendary", 1000), ("Legendary Amped", 1200),
        ),
        "totalMinted": 16883,
        "pageSize": 100,
    },
    "element369": {
        "name": "Element 369",
        "address": "0x024D64E2F65747d8bB02dFb852702D588A062575",
        "vaultAddress": "0x4e3DBD6333e649AF13C823DAAcDd14f8507ECBc5",
        "deploymentBlock": 21224418,
        "rewardStrategy": CYCLE,
        "tiers": _tiers(("Common", 1), ("Rare", 10), ("Legendary", 100)),
    },
    "stax": {
        "name": "Stax",
        "address": "0x74270Ca3a274B4dbf26be319A55188690CACE6E1",
        "vaultAddress": "0x5D27813C32dD705404d1A78c9444dAb523331717",
        "deploymentBlock": 21452667,
        "rewardStrategy": POOL,
        "hasBurnCounter": True,
        "tiers": _tiers(
            ("Common", 1), ("Common Amped", 1.2), ("Common Super", 1.4), ("Common LFG", 2),
            ("Rare", 10), ("Rare Amped", 12), ("Rare Super", 14), ("Rare LFG", 20),
            ("Legendary", 100), ("Legendary Amped", 120), ("Legendary Super", 140), ("Legendary LFG", 200),
        ),
    },
    "ascendant": {
        "name": "Ascendant",
        "address": "0x9da95c32c5869c84ba2c020b5e87329ec0adc97f",
        "deploymentBlock": 21112535,
        "rewardStrategy": SHARE_VESTED,
        "tierFunction": "getNFTAttribute",
        "tierAttributeIndex": 1,
        "supplyFunction": "tokenId",
        "tiers": _tiers(*[(f"Tier {i}", round(1 + i / 100, 2)) for i in range(1, 9)]),
    },
    "e280": {
        "name": "E280",
        "address": None,
        "disabled": True,
    },
}


def load_collections(path=None):
    """Build the collection table, optionally replacing entries from a JSON file."""
    table = {key.lower(): data for key, data in DEFAULT_COLLECTIONS.items()}
    if path:
        with open(path) as f:
            overrides = json.load(f)
        logger.info(f"Loaded {len(overrides)} collection definitions from {path}")
        table.update({key.lower(): data for key, data in overrides.items()})
    return {key.lower(): CollectionConfig.from_dict(key, data) for key, data in table.items()}
