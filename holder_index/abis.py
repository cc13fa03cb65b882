# Minimal ABI fragments for the functions the indexer calls.

def _fn(name, inputs, outputs):
    return {
        "name": name,
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


TRANSFER_EVENT_SIGNATURE = "Transfer(address,address,uint256)"
# keccak(TRANSFER_EVENT_SIGNATURE)
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEAD_ADDRESS = "0x000000000000000000000000000000000000dead"

NFT_ABI = [
    _fn("totalSupply", [], [("", "uint256")]),
    _fn("totalBurned", [], [("", "uint256")]),
    _fn("tokenId", [], [("", "uint256")]),
    _fn("ownerOf", [("tokenId", "uint256")], [("", "address")]),
    _fn("getNftTier", [("tokenId", "uint256")], [("tier", "uint8")]),
    _fn("getNFTAttribute", [("tokenId", "uint256")], [("rarityNumber", "uint256"), ("tier", "uint8"), ("rarity", "uint8")]),
    _fn("batchClaimableAmount", [("tokenIds", "uint256[]")], [("toClaim", "uint256")]),
    _fn(
        "userRecords",
        [("tokenId", "uint256")],
        [("shares", "uint256"), ("lockedAscendant", "uint256"), ("rewardDebt", "uint256"), ("startTime", "uint32"), ("endTime", "uint32")],
    ),
    _fn("totalShares", [], [("", "uint256")]),
    _fn("toDistribute", [("pool", "uint8")], [("", "uint256")]),
]

POOL_VAULT_ABI = [
    _fn("getRewards", [("tokenIds", "uint256[]"), ("account", "address")], [("availability", "bool[]"), ("totalReward", "uint256")]),
]

CYCLE_VAULT_ABI = [
    _fn(
        "getRewards",
        [("tokenIds", "uint256[]"), ("account", "address"), ("isBacking", "bool")],
        [("availability", "bool[]"), ("burned", "bool[]"), ("infernoPool", "uint256"), ("fluxPool", "uint256"), ("e280Pool", "uint256")],
    ),
]

MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"
MULTICALL3_ABI = [
    {
        "name": "aggregate3",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {
                "name": "calls",
                "type": "tuple[]",
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"},
                ],
            }
        ],
        "outputs": [
            {
                "name": "returnData",
                "type": "tuple[]",
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
            }
        ],
    }
]
