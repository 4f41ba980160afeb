#!/usr/bin/env python3
"""
Per-chain contract access for the keeper.

ChainClient wraps an AsyncWeb3 connection plus the AuctionHub and BidManager
contracts of one network. State-changing calls return a PendingTransaction whose
wait() is bounded by the receipt timeout and raises TransactionReverted when the
contract rejects the call.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.middleware import ExtraDataToPOAMiddleware

from .exceptions import ChainError, ConfigurationError, TransactionReverted
from .models import AuctionStatus, OnChainAuction
from .registry import ChainConfig, ChainIdentifier, ChainRegistry
from .utils import checksum_address, intent_id_to_bytes, normalize_tx_hash, short

logger = logging.getLogger(__name__)

ABI_DIR = Path(__file__).parent / "abis"

# Provider errors that a smaller block range usually fixes
SPLITTABLE_LOG_ERRORS = (
    'too many results',
    'response size',
    'limit',
    'timeout',
    'gateway',
    'internal error',
    'server error',
)

_abi_cache: Dict[str, List[Dict]] = {}


def load_abi(name: str) -> List[Dict]:
    """Load a contract ABI shipped with the package"""
    if name not in _abi_cache:
        with open(ABI_DIR / f"{name}.json") as f:
            _abi_cache[name] = json.load(f)
    return _abi_cache[name]


def _output_names(abi_name: str, function_name: str) -> List[str]:
    for entry in load_abi(abi_name):
        if entry.get("type") == "function" and entry.get("name") == function_name:
            return [o["name"] for o in entry["outputs"]]
    raise KeyError(f"{function_name} not in {abi_name} ABI")


def _revert_reason(error: Exception) -> str:
    message = getattr(error, "message", None) or str(error)
    return message.replace("execution reverted:", "").strip() or "execution reverted"


class PendingTransaction:
    """Submitted keeper transaction awaiting its receipt"""

    def __init__(self, client: "ChainClient", action: str, tx_hash: str):
        self.client = client
        self.action = action
        self.tx_hash = tx_hash
        self.receipt = None

    async def wait(self, timeout: Optional[float] = None):
        timeout = timeout if timeout is not None else self.client.receipt_timeout
        try:
            receipt = await self.client.w3.eth.wait_for_transaction_receipt(self.tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise ChainError(
                f"{self.action} {short(self.tx_hash)} not mined within {timeout:.0f}s on {self.client.name}"
            ) from e
        except Exception as e:
            raise ChainError(f"Failed waiting for {self.action} {short(self.tx_hash)}: {e}") from e

        if receipt["status"] == 0:
            raise TransactionReverted(self.action, "transaction failed on-chain", self.tx_hash)
        self.receipt = receipt
        logger.info(
            f"[{receipt['blockNumber']}] ✅ {self.action} confirmed on {self.client.name} (tx: {short(self.tx_hash)})"
        )
        return receipt


class ChainClient:
    """AuctionHub/BidManager access on one network"""

    def __init__(self, chain: ChainConfig, private_key: Optional[str] = None,
                 receipt_timeout: float = 180.0, w3: Optional[AsyncWeb3] = None):
        self.chain = chain
        self.receipt_timeout = receipt_timeout

        if w3 is None:
            w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(chain.rpc_url))
            # Add PoA middleware for some networks
            if chain.poa:
                w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.w3 = w3

        self.account = Account.from_key(private_key) if private_key else None
        self.auction_hub = self.w3.eth.contract(
            address=checksum_address(chain.auction_hub_address),
            abi=load_abi("AuctionHub"),
        )
        self.bid_manager = self.w3.eth.contract(
            address=checksum_address(chain.bid_manager_address),
            abi=load_abi("BidManager"),
        )
        # One nonce sequence per keeper account and chain
        self._send_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.chain.name

    async def connect(self) -> int:
        """Check the endpoint and chain id; returns the head block"""
        try:
            chain_id = await self.w3.eth.chain_id
            head = await self.w3.eth.block_number
        except Exception as e:
            raise ChainError(f"Failed to connect to {self.name}: {e}") from e
        if chain_id != self.chain.id:
            raise ConfigurationError(
                f"RPC for {self.name} reports chain id {chain_id}, expected {self.chain.id}"
            )
        logger.info(f"[{head}] Connected to {self.name} (chain_id: {chain_id})")
        return head

    async def block_number(self) -> int:
        try:
            return await self.w3.eth.block_number
        except Exception as e:
            raise ChainError(f"Failed to read block number on {self.name}: {e}") from e

    async def get_block(self, block_identifier, full_transactions: bool = False):
        try:
            return await self.w3.eth.get_block(block_identifier, full_transactions=full_transactions)
        except Exception as e:
            raise ChainError(f"Failed to fetch block {block_identifier} on {self.name}: {e}") from e

    async def get_auction(self, intent_id: str) -> OnChainAuction:
        """Read AuctionHub.auctions(intentId)"""
        try:
            values = await self.auction_hub.functions.auctions(intent_id_to_bytes(intent_id)).call()
        except Exception as e:
            raise ChainError(f"Failed to read auction {short(intent_id)} on {self.name}: {e}") from e

        raw = dict(zip(_output_names("AuctionHub", "auctions"), values))
        try:
            status = AuctionStatus(int(raw["status"]))
        except ValueError as e:
            raise ChainError(f"Unknown on-chain status {raw['status']} for {short(intent_id)} on {self.name}") from e

        return OnChainAuction(
            seller=raw["seller"],
            nft_contract=raw["nftContract"],
            token_id=raw["tokenId"],
            starting_price=raw["startingPrice"],
            reserve_price=raw["reservePrice"],
            deadline=raw["deadline"],
            preferred_token=raw["preferdToken"],
            preferred_chain=int(raw["preferdChain"]),
            status=status,
            winner=raw.get("winner"),
            winning_amount=raw.get("winningBid", 0),
        )

    async def _send(self, contract_function, action: str) -> PendingTransaction:
        if self.account is None:
            raise ConfigurationError(f"No keeper key configured; cannot send {action} on {self.name}")

        async with self._send_lock:
            try:
                nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
                # Gas estimation surfaces contract reverts before anything is broadcast
                tx = await contract_function.build_transaction({
                    "from": self.account.address,
                    "nonce": nonce,
                    "chainId": self.chain.id,
                })
            except ContractLogicError as e:
                raise TransactionReverted(action, _revert_reason(e)) from e
            except Exception as e:
                raise ChainError(f"Failed to build {action} on {self.name}: {e}") from e

            signed = self.account.sign_transaction(tx)
            try:
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as e:
                raise TransactionReverted(action, _revert_reason(e)) from e
            except Exception as e:
                raise ChainError(f"Failed to submit {action} on {self.name}: {e}") from e

        tx_hash = normalize_tx_hash(tx_hash)
        logger.info(f"📤 {action} submitted on {self.name} (tx: {short(tx_hash)})")
        return PendingTransaction(self, action, tx_hash)

    async def finalize_auction(self, intent_id: str, winner: str, amount: int) -> PendingTransaction:
        fn = self.auction_hub.functions.finalizeAuction(
            intent_id_to_bytes(intent_id), checksum_address(winner), int(amount)
        )
        return await self._send(fn, "finalizeAuction")

    async def release_nft(self, intent_id: str) -> PendingTransaction:
        fn = self.auction_hub.functions.NFTrelease(intent_id_to_bytes(intent_id))
        return await self._send(fn, "NFTrelease")

    async def release_winning_bid(self, intent_id: str, winner: str, seller: str) -> PendingTransaction:
        fn = self.bid_manager.functions.releaseWinningBid(
            intent_id_to_bytes(intent_id), checksum_address(winner), checksum_address(seller)
        )
        return await self._send(fn, "releaseWinningBid")

    async def refund_bid(self, intent_id: str, bidder: str) -> PendingTransaction:
        fn = self.bid_manager.functions.refundBid(intent_id_to_bytes(intent_id), checksum_address(bidder))
        return await self._send(fn, "refundBid")

    async def get_event_logs(self, contract: str, event_name: str, from_block: int, to_block: int,
                             min_span: int = 500) -> List[Any]:
        """Fetch logs for an event with adaptive range splitting.

        - contract is "auction_hub" or "bid_manager"
        - splits the block range on provider size/limit errors
        """
        event = getattr(getattr(self, contract).events, event_name)
        try:
            return list(await event.get_logs(from_block=from_block, to_block=to_block))
        except Exception as e:
            span = to_block - from_block
            msg = str(e).lower()
            if span > min_span and any(x in msg for x in SPLITTABLE_LOG_ERRORS):
                mid = from_block + span // 2
                left = await self.get_event_logs(contract, event_name, from_block, mid, min_span)
                right = await self.get_event_logs(contract, event_name, mid + 1, to_block, min_span)
                return left + right
            raise ChainError(
                f"Failed to fetch {event_name} logs {from_block}-{to_block} on {self.name}: {e}"
            ) from e

    async def close(self) -> None:
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


class ChainClientPool:
    """Lazily created ChainClient per configured chain"""

    def __init__(self, registry: ChainRegistry, private_key: Optional[str] = None,
                 receipt_timeout: float = 180.0):
        self.registry = registry
        self.private_key = private_key
        self.receipt_timeout = receipt_timeout
        self._clients: Dict[int, ChainClient] = {}

    def get(self, chain: ChainIdentifier) -> ChainClient:
        """Client for a chain id, name or enum index; raises UnknownChainError"""
        chain_config = self.registry.resolve(chain)
        client = self._clients.get(chain_config.id)
        if client is None:
            client = ChainClient(chain_config, self.private_key, self.receipt_timeout)
            self._clients[chain_config.id] = client
        return client

    async def close(self) -> None:
        for client in self._clients.values():
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Failed to close connection to {client.name}: {e}")
        self._clients.clear()
