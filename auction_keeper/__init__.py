"""
Keeper for cross-chain NFT auctions: ingests AuctionHub/BidManager events,
aggregates bids across chains, and finalizes and settles ended auctions.
"""

__version__ = "0.1.0"
