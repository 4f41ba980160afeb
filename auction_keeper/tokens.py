#!/usr/bin/env python3
"""
Token and settlement-route resolution.

Token symbols come from the registry's per-chain address table. Stablecoin
equivalence is a routing hint only; it never gates settlement.
"""

import logging
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .exceptions import UnknownTokenError
from .registry import ChainConfig, ChainIdentifier, ChainRegistry
from .utils import normalize_address

logger = logging.getLogger(__name__)

# Stable coin decimals
STABLE_COIN_DECIMALS = {
    "USDC": 6,
    "USDT": 6,
    "DAI": 18,
    "USDC.e": 6,  # Bridged USDC on some chains
}

# Stable coins treated as 1:1 for routing
EQUIVALENT_STABLE_COINS = frozenset(STABLE_COIN_DECIMALS)

DEFAULT_DECIMALS = 18
DEFAULT_STABLE_SLIPPAGE_BPS = 50  # 0.5%


class RouteAction(str, Enum):
    """What the seller still has to do to receive the preferred token/chain"""
    NONE = "NONE"
    BRIDGE_ONLY = "BRIDGE_ONLY"
    SWAP_ONLY = "SWAP_ONLY"
    BRIDGE_AND_SWAP = "BRIDGE_AND_SWAP"


class SettlementRoute(BaseModel):
    """Where released funds are versus where the seller wants them"""
    current_chain_id: int
    current_token: str
    current_symbol: str
    preferred_chain_id: int
    preferred_token: str
    preferred_symbol: str
    needs_bridge: bool
    needs_swap: bool
    action: RouteAction

    @property
    def is_direct(self) -> bool:
        return self.action == RouteAction.NONE


class TokenResolver:
    """Resolve token addresses to symbols/decimals per chain"""

    def __init__(self, registry: ChainRegistry):
        self.registry = registry

    def _chain(self, chain: ChainIdentifier) -> ChainConfig:
        return self.registry.resolve(chain)

    def symbol(self, token_address: str, chain: ChainIdentifier) -> str:
        chain_config = self._chain(chain)
        symbol = chain_config.tokens.get(normalize_address(token_address))
        if not symbol:
            raise UnknownTokenError(token_address, chain_config.id, chain_config.tokens.values())
        return symbol

    def find_symbol(self, token_address: str, chain: ChainIdentifier) -> Optional[str]:
        chain_config = self.registry.find(chain)
        if chain_config is None:
            return None
        return chain_config.tokens.get(normalize_address(token_address))

    def bid_unit(self, bid) -> str:
        """Aggregation unit of a bid: its token symbol, or the address when unlisted"""
        return self.find_symbol(bid.token, bid.source_chain) or normalize_address(bid.token)

    @staticmethod
    def decimals(symbol: str) -> int:
        return STABLE_COIN_DECIMALS.get(symbol, DEFAULT_DECIMALS)

    @staticmethod
    def is_stablecoin(symbol: Optional[str]) -> bool:
        return symbol in EQUIVALENT_STABLE_COINS

    @classmethod
    def are_equivalent(cls, symbol_a: Optional[str], symbol_b: Optional[str]) -> bool:
        return cls.is_stablecoin(symbol_a) and cls.is_stablecoin(symbol_b)

    @classmethod
    def format_amount(cls, amount: int, symbol: str) -> str:
        """Exact human-readable amount, e.g. 110000000 USDC -> '110'"""
        value = Decimal(int(amount)).scaleb(-cls.decimals(symbol))
        text = format(value, "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text

    @staticmethod
    def minimum_out(amount_in: int, input_decimals: int, output_decimals: int,
                    slippage_bps: int = DEFAULT_STABLE_SLIPPAGE_BPS) -> int:
        """Minimum output for a 1:1 stable swap after decimal adjustment and slippage"""
        amount = int(amount_in)
        if input_decimals > output_decimals:
            amount //= 10 ** (input_decimals - output_decimals)
        elif output_decimals > input_decimals:
            amount *= 10 ** (output_decimals - input_decimals)
        return amount * (10000 - slippage_bps) // 10000

    def check_stablecoins(self, winner_symbol: str, preferred_symbol: str) -> bool:
        """Warn when either side is not a recognized stable coin"""
        ok = True
        if not self.is_stablecoin(winner_symbol):
            logger.warning(f"⚠️  Winner token {winner_symbol} is not a recognized stable coin")
            ok = False
        if not self.is_stablecoin(preferred_symbol):
            logger.warning(f"⚠️  Preferred token {preferred_symbol} is not a recognized stable coin")
            ok = False
        if not ok:
            logger.warning("⚠️  Settlement routing assumes stable coins; non-stable swaps may slip")
        return ok

    def route(self, current_chain: ChainIdentifier, current_token: str,
              preferred_chain: ChainIdentifier, preferred_token: str) -> SettlementRoute:
        current = self._chain(current_chain)
        preferred = self._chain(preferred_chain)
        current_symbol = self.symbol(current_token, current)
        preferred_symbol = self.symbol(preferred_token, preferred)

        needs_bridge = current.id != preferred.id
        needs_swap = current_symbol != preferred_symbol
        if needs_bridge and needs_swap:
            action = RouteAction.BRIDGE_AND_SWAP
        elif needs_bridge:
            action = RouteAction.BRIDGE_ONLY
        elif needs_swap:
            action = RouteAction.SWAP_ONLY
        else:
            action = RouteAction.NONE

        return SettlementRoute(
            current_chain_id=current.id,
            current_token=normalize_address(current_token),
            current_symbol=current_symbol,
            preferred_chain_id=preferred.id,
            preferred_token=normalize_address(preferred_token),
            preferred_symbol=preferred_symbol,
            needs_bridge=needs_bridge,
            needs_swap=needs_swap,
            action=action,
        )
