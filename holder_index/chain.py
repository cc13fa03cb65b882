"""Chain access: logs, contract reads and Multicall3 batches over web3,
plus the Alchemy NFT owner listing used for full rebuilds."""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import requests
from eth_abi.exceptions import DecodingError
from eth_utils.abi import collapse_if_tuple
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from holder_index.abis import MULTICALL3_ABI, MULTICALL3_ADDRESS
from holder_index.errors import ChainReadError, RateLimitedError
from holder_index.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class Call:
    address: str
    abi: list
    function: str
    args: Sequence[Any] = field(default_factory=tuple)


@dataclass
class CallResult:
    success: bool
    value: Any = None
    error: Optional[str] = None
    # the call itself reverted, as opposed to never reaching the chain
    reverted: bool = False


class ChainReader:
    def get_head_block(self) -> int:
        raise NotImplementedError

    def get_logs(self, address, topics, from_block, to_block) -> list:
        raise NotImplementedError

    def read_contract(self, address, abi, function, args=()):
        raise NotImplementedError

    def batch_call(self, calls: List[Call]) -> List[CallResult]:
        raise NotImplementedError

    def get_transaction_receipt(self, tx_hash) -> Optional[dict]:
        """Receipt of a mined transaction, or None when the node does not know it."""
        raise NotImplementedError


def _output_types(abi, function):
    for entry in abi:
        if entry.get("type") == "function" and entry.get("name") == function:
            return [collapse_if_tuple(o) for o in entry.get("outputs", [])]
    raise ValueError(f"{function} not found in ABI")


class Web3ChainReader(ChainReader):
    def __init__(self, w3, retry=None):
        self.w3 = w3
        self.retry = retry or RetryPolicy()

    @classmethod
    def from_settings(cls, settings):
        w3 = Web3(Web3.HTTPProvider(settings.rpc_url, request_kwargs={"timeout": settings.rpc_timeout}))
        retry = RetryPolicy(
            max_attempts=settings.max_retries,
            base_delay=settings.retry_base_delay,
            rate_limit_multiplier=settings.rate_limit_multiplier,
            max_delay=settings.retry_max_delay,
        )
        return cls(w3, retry)

    def _contract(self, address, abi):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def get_head_block(self):
        return self.retry.call(lambda: self.w3.eth.block_number, "eth_blockNumber")

    def get_logs(self, address, topics, from_block, to_block):
        params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": Web3.to_checksum_address(address),
            "topics": topics,
        }
        return self.retry.call(lambda: self.w3.eth.get_logs(params), f"eth_getLogs {from_block}-{to_block}")

    def read_contract(self, address, abi, function, args=()):
        contract = self._contract(address, abi)
        return self.retry.call(lambda: contract.functions[function](*args).call(), function)

    def get_transaction_receipt(self, tx_hash):
        try:
            receipt = self.retry.call(lambda: self.w3.eth.get_transaction_receipt(tx_hash), f"receipt {tx_hash}")
        except TransactionNotFound:
            return None
        return {"blockNumber": receipt["blockNumber"], "logs": [dict(log) for log in receipt["logs"]]}

    def batch_call(self, calls):
        """Run `calls` through one Multicall3 aggregate3 request.

        Reverts, decode failures and transport failures are reported per
        element; only an exhausted rate-limit budget is raised.
        """
        results: List[Optional[CallResult]] = [None] * len(calls)
        encoded = []
        for i, call in enumerate(calls):
            try:
                contract = self._contract(call.address, call.abi)
                data = contract.encode_abi(call.function, args=list(call.args))
            except (ValueError, TypeError) as e:
                results[i] = CallResult(False, error=f"encode failed: {e}")
                continue
            encoded.append((i, {"target": contract.address, "allowFailure": True, "callData": data}))

        if not encoded:
            return results

        multicall = self._contract(MULTICALL3_ADDRESS, MULTICALL3_ABI)
        try:
            raw = self.retry.call(
                lambda: multicall.functions.aggregate3([c for _, c in encoded]).call(),
                f"multicall({len(encoded)})",
            )
        except RateLimitedError:
            raise
        except (ChainReadError, ContractLogicError) as e:
            logger.error(f"Multicall of {len(encoded)} calls failed: {e}")
            for i, _ in encoded:
                results[i] = CallResult(False, error=str(e))
            return results

        for (i, _), (success, data) in zip(encoded, raw):
            call = calls[i]
            if not success:
                results[i] = CallResult(False, error=f"{call.function} reverted", reverted=True)
                continue
            try:
                values = self.w3.codec.decode(_output_types(call.abi, call.function), data)
            except (DecodingError, ValueError) as e:
                results[i] = CallResult(False, error=f"decode failed: {e}")
                continue
            results[i] = CallResult(True, values[0] if len(values) == 1 else tuple(values))
        return results


class AlchemyOwnerSource:
    """Paged `getOwnersForContract` listing from the Alchemy NFT API."""

    def __init__(self, api_key, network="eth-mainnet", retry=None, timeout=30, max_pages=100, session=None):
        self.base_url = f"https://{network}.g.alchemy.com/nft/v3/{api_key}"
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self.max_pages = max_pages
        self.session = session or requests.Session()

    def _page(self, address, page_key):
        params = {"contractAddress": address, "withTokenBalances": "true"}
        if page_key:
            params["pageKey"] = page_key
        r = self.session.get(f"{self.base_url}/getOwnersForContract", params=params, timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def get_owners(self, address):
        """Return {wallet (lowercase): [token ids]} for every current owner."""
        owners = {}
        page_key = None
        for page in range(1, self.max_pages + 1):
            data = self.retry.call(lambda: self._page(address, page_key), f"getOwnersForContract page {page}")
            if not isinstance(data.get("owners"), list):
                raise ChainReadError(f"Invalid owners response from Alchemy for {address}")
            for owner in data["owners"]:
                wallet = owner["ownerAddress"].lower()
                for tb in owner.get("tokenBalances") or []:
                    if int(tb.get("balance", 1)) <= 0:
                        continue
                    tid = str(tb["tokenId"])
                    owners.setdefault(wallet, []).append(int(tid, 16) if tid.startswith("0x") else int(tid))
            page_key = data.get("pageKey")
            logger.debug(f"Fetched owners page {page}: {len(owners)} owners so far")
            if not page_key:
                break
        else:
            logger.warning(f"Reached max pages ({self.max_pages}) listing owners of {address}")
        logger.info(f"Fetched {len(owners)} owners for {address}")
        return owners
