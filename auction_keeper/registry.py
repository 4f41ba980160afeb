#!/usr/bin/env python3
"""
Chain registry: static per-chain configuration looked up by numeric chain id,
short name, display name or the contracts' uint8 chain enum.
"""

import logging
from typing import Dict, Iterator, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import find_unexpanded_var, load_chains_config
from .exceptions import ConfigurationError, UnknownChainError
from .utils import normalize_address, normalize_chain_id, is_zero_address

logger = logging.getLogger(__name__)

ChainIdentifier = Union[int, str]


class ChainConfig(BaseModel):
    """One configured network"""
    id: int = Field(..., description="EVM chain id")
    name: str = Field(..., description="Short name used as chain key (e.g. baseSepolia)")
    display_name: str = Field("", description="Human readable network name")
    rpc_url: str = Field(..., description="JSON-RPC endpoint")
    auction_hub_address: str = Field(..., description="AuctionHub contract")
    bid_manager_address: str = Field(..., description="BidManager contract")
    enum_index: Optional[int] = Field(None, description="Index of this chain in the contracts' chain enum")
    poa: bool = Field(False, description="Inject extra-data PoA middleware")
    start_block: Optional[int] = Field(None, description="First block to scan; None starts at the head")
    tokens: Dict[str, str] = Field(default_factory=dict, description="Token address -> symbol")

    @field_validator("auction_hub_address", "bid_manager_address", mode="before")
    @classmethod
    def validate_contract_address(cls, v):
        address = normalize_address(v)
        if len(address) != 42 or is_zero_address(address):
            raise ValueError(f"Invalid contract address: {v}")
        return address

    @field_validator("tokens", mode="before")
    @classmethod
    def validate_tokens(cls, v):
        return {normalize_address(address): str(symbol) for address, symbol in (v or {}).items()}

    @field_validator("start_block", mode="before")
    @classmethod
    def parse_start_block(cls, v):
        """'latest' or empty means start at the current head"""
        if v in (None, "", "latest"):
            return None
        return int(v)


class ChainRegistry:
    """Immutable lookup table of configured chains"""

    def __init__(self, chains: List[ChainConfig]):
        self._chains: Dict[str, ChainConfig] = {}
        self._by_id: Dict[int, ChainConfig] = {}
        self._by_enum: Dict[int, ChainConfig] = {}
        self._by_alias: Dict[str, ChainConfig] = {}

        for chain in chains:
            if chain.id in self._by_id:
                raise ConfigurationError(f"Duplicate chain id {chain.id} ({chain.name})")
            self._chains[chain.name] = chain
            self._by_id[chain.id] = chain
            if chain.enum_index is not None:
                self._by_enum[chain.enum_index] = chain
            self._by_alias[chain.name.lower()] = chain
            if chain.display_name:
                self._by_alias[chain.display_name.lower()] = chain

    @classmethod
    def from_config(cls, config: Dict, networks: Optional[List[str]] = None) -> "ChainRegistry":
        """Build the registry from a loaded chains config; missing values are fatal"""
        network_configs = config.get("networks") or {}
        if networks:
            unknown = [n for n in networks if n not in network_configs]
            if unknown:
                raise ConfigurationError(
                    f"Unknown network(s) {', '.join(unknown)}; configured: {', '.join(network_configs)}"
                )
            network_configs = {n: network_configs[n] for n in networks}

        chains = []
        for network_name, network_config in network_configs.items():
            network_config = network_config or {}
            for key in ("chain_id", "rpc_url", "auction_hub", "bid_manager"):
                value = network_config.get(key)
                if value in (None, ""):
                    raise ConfigurationError(f"Network '{network_name}' is missing required '{key}'")
                missing_var = find_unexpanded_var(value)
                if missing_var:
                    raise ConfigurationError(
                        f"Network '{network_name}': environment variable {missing_var} is not set (needed for '{key}')"
                    )
            try:
                chains.append(ChainConfig(
                    id=network_config["chain_id"],
                    name=network_name,
                    display_name=network_config.get("display_name", ""),
                    rpc_url=network_config["rpc_url"],
                    auction_hub_address=network_config["auction_hub"],
                    bid_manager_address=network_config["bid_manager"],
                    enum_index=network_config.get("enum_index"),
                    poa=network_config.get("poa", False),
                    start_block=network_config.get("start_block"),
                    tokens=network_config.get("tokens", {}),
                ))
            except ValidationError as e:
                raise ConfigurationError(f"Invalid configuration for network '{network_name}': {e}") from e

        registry = cls(chains)
        logger.info(f"Chain registry ready: {', '.join(registry.names)}")
        return registry

    @classmethod
    def from_file(cls, config_path: str, networks: Optional[List[str]] = None) -> "ChainRegistry":
        return cls.from_config(load_chains_config(config_path), networks)

    @property
    def names(self) -> List[str]:
        return list(self._chains)

    def __iter__(self) -> Iterator[ChainConfig]:
        return iter(self._chains.values())

    def __len__(self) -> int:
        return len(self._chains)

    def find(self, identifier: Optional[ChainIdentifier]) -> Optional[ChainConfig]:
        """Resolve a chain id, enum index, short name or display name; None if unknown"""
        if identifier is None:
            return None
        if isinstance(identifier, ChainConfig):
            return identifier

        numeric = normalize_chain_id(identifier)
        if numeric is not None:
            # Real chain ids never collide with the small enum range
            if numeric in self._by_id:
                return self._by_id[numeric]
            return self._by_enum.get(numeric)

        return self._by_alias.get(str(identifier).strip().lower())

    def resolve(self, identifier: Optional[ChainIdentifier]) -> ChainConfig:
        chain = self.find(identifier)
        if chain is None:
            raise UnknownChainError(identifier, self.names)
        return chain

    def to_public_dict(self) -> Dict[str, Dict]:
        """Chain table without RPC endpoints (they may embed API keys)"""
        return {
            chain.name: {
                "id": chain.id,
                "name": chain.name,
                "display_name": chain.display_name,
                "auction_hub_address": chain.auction_hub_address,
                "bid_manager_address": chain.bid_manager_address,
                "enum_index": chain.enum_index,
                "tokens": len(chain.tokens),
            }
            for chain in self
        }
