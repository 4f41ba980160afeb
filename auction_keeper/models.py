#!/usr/bin/env python3
"""
Pydantic models for auction, bid and on-chain auction state.
"""

from enum import IntEnum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .utils import (
    ZERO_ADDRESS,
    UNKNOWN_TX_HASH,
    normalize_address,
    normalize_intent_id,
    normalize_refund_target,
    normalize_tx_hash,
)

ChainRef = Union[int, str]


class AuctionStatus(IntEnum):
    """Auction lifecycle, shared with the AuctionHub status enum"""
    CREATED = 0
    ACTIVE = 1
    FINALIZED = 2
    SETTLED = 3
    CLAIMED = 4
    CANCELLED = 5

    @property
    def is_done(self) -> bool:
        """Nothing left for the keeper to do"""
        return self in (AuctionStatus.SETTLED, AuctionStatus.CLAIMED, AuctionStatus.CANCELLED)


class Auction(BaseModel):
    """One listing, keyed by the contract-assigned intent id"""
    intent_id: str = Field(..., description="bytes32 intent id (0x hex)")
    seller: str = Field(..., description="Seller address")
    nft_contract: str = Field(..., description="NFT contract address")
    token_id: int = Field(..., description="NFT token id")
    starting_price: int = Field(0, description="Starting price in smallest token units")
    reserve_price: int = Field(0, description="Reserve price in smallest token units")
    deadline: int = Field(..., description="Unix timestamp when bidding closes")
    preferred_token: str = Field(..., description="Token the seller wants to receive")
    preferred_chain: ChainRef = Field(..., description="Chain the seller wants to be paid on")
    source_chain: str = Field(..., description="Chain name of the hub that emitted AuctionCreated")
    status: AuctionStatus = Field(AuctionStatus.ACTIVE, description="Cached lifecycle status")
    tx_hash: str = Field(UNKNOWN_TX_HASH, description="Creation transaction hash")
    timestamp: int = Field(..., description="Unix timestamp when the creation event was ingested")
    cancel_tx_hash: Optional[str] = Field(None, description="Cancellation transaction hash")
    cancel_timestamp: Optional[int] = Field(None, description="Unix timestamp of cancellation")

    # Settlement progress, written after each confirmed step
    finalize_tx_hash: Optional[str] = Field(None, description="finalizeAuction transaction")
    funds_release_tx_hash: Optional[str] = Field(None, description="releaseWinningBid transaction")
    nft_release_tx_hash: Optional[str] = Field(None, description="NFTrelease transaction")
    refunded_bidders: List[str] = Field(default_factory=list, description="Refunded losing escrows as bidder@chain")
    unrefunded_bidders: List[str] = Field(default_factory=list, description="Losing escrows whose refund failed, as bidder@chain")

    @field_validator("intent_id", mode="before")
    @classmethod
    def validate_intent_id(cls, v):
        return normalize_intent_id(v)

    @field_validator("seller", "nft_contract", "preferred_token", mode="before")
    @classmethod
    def validate_address(cls, v):
        return normalize_address(v)

    @field_validator("refunded_bidders", "unrefunded_bidders", mode="before")
    @classmethod
    def validate_refund_targets(cls, v):
        return [normalize_refund_target(t) for t in (v or [])]


class Bid(BaseModel):
    """One funding transaction toward an auction"""
    transaction_hash: str = Field(UNKNOWN_TX_HASH, description="Bid transaction hash or generated id")
    intent_id: str = Field(..., description="Auction intent id (not required to exist yet)")
    bidder: str = Field(..., description="Bidder address")
    amount: int = Field(..., ge=0, description="Bid amount in smallest token units")
    token: str = Field(..., description="Bid token address")
    source_chain: str = Field(..., description="Chain name where the bid was escrowed")
    timestamp: int = Field(..., description="Block timestamp of the bid, or ingestion time when the block is unavailable")

    @field_validator("intent_id", mode="before")
    @classmethod
    def validate_intent_id(cls, v):
        return normalize_intent_id(v)

    @field_validator("bidder", "token", mode="before")
    @classmethod
    def validate_address(cls, v):
        return normalize_address(v)

    @field_validator("transaction_hash", mode="before")
    @classmethod
    def validate_tx_hash(cls, v):
        if isinstance(v, str) and v.startswith("gen-"):
            return v
        return normalize_tx_hash(v) or UNKNOWN_TX_HASH

    @property
    def has_generated_hash(self) -> bool:
        return self.transaction_hash.startswith("gen-")


class AggregatedBid(BaseModel):
    """Per-bidder, per-token rollup of an auction's bids"""
    bidder: str
    total_amount: int = 0
    token: str
    source_chain: str
    # Escrowed amount per chain, in the order the chains were first bid on
    chain_amounts: Dict[str, int] = Field(default_factory=dict)
    bid_count: int = 0
    transactions: List[str] = Field(default_factory=list)
    first_timestamp: int = 0
    last_timestamp: int = 0


class OnChainAuction(BaseModel):
    """AuctionHub.auctions(intentId) view"""
    seller: str
    nft_contract: str = ZERO_ADDRESS
    token_id: int = 0
    starting_price: int = 0
    reserve_price: int = 0
    deadline: int = 0
    preferred_token: str = ZERO_ADDRESS
    preferred_chain: ChainRef = 0
    status: AuctionStatus = AuctionStatus.CREATED
    winner: Optional[str] = None
    winning_amount: int = 0

    @field_validator("seller", "nft_contract", "preferred_token", "winner", mode="before")
    @classmethod
    def validate_address(cls, v):
        if v is None:
            return None
        return normalize_address(v)

    @property
    def exists(self) -> bool:
        return self.seller != ZERO_ADDRESS
