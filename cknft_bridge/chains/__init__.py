"""
Chain registry for the source and target chains the bridge can reach.
Routes queries to the adapter registered for a chain.
"""

from typing import Iterable, Optional

from cknft_bridge.chains.base import ChainQueryAdapter
from cknft_bridge.models import ChainFamily, ChainRef
from cknft_bridge.utils.logging import get_logger

logger = get_logger(__name__)


# Chain metadata for display
CHAIN_INFO = {
    "evm:1": {"name": "Ethereum", "explorer": "https://etherscan.io/tx/"},
    "evm:8453": {"name": "Base", "explorer": "https://basescan.org/tx/"},
    "evm:137": {"name": "Polygon", "explorer": "https://polygonscan.com/tx/"},
    "evm:11155111": {"name": "Sepolia", "explorer": "https://sepolia.etherscan.io/tx/"},
    "solana:mainnet": {"name": "Solana", "explorer": "https://solscan.io/tx/"},
    "solana:devnet": {"name": "Solana Devnet", "explorer": "https://solscan.io/tx/?cluster=devnet"},
}


class ChainRegistry:
    """Registry of chain adapters keyed by chain."""

    def __init__(self, adapters: Optional[Iterable[ChainQueryAdapter]] = None):
        self._adapters: dict[str, ChainQueryAdapter] = {}
        for adapter in adapters or ():
            self.register(adapter)
        self._initialized = False

    def register(self, adapter: ChainQueryAdapter) -> None:
        self._adapters[adapter.chain.key] = adapter

    async def initialize(self) -> None:
        """Initialize all adapters."""
        for key, adapter in self._adapters.items():
            try:
                await adapter.initialize()
                logger.info("Initialized chain adapter", chain=key)
            except Exception as e:
                # One unreachable chain must not take the others down
                logger.error("Failed to initialize chain adapter", chain=key, error=str(e))

        self._initialized = True

    async def close(self) -> None:
        """Close all adapter connections."""
        for key, adapter in self._adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.error("Failed to close chain adapter", chain=key, error=str(e))

        self._initialized = False

    def get(self, chain: ChainRef) -> ChainQueryAdapter:
        """Get the adapter for a chain."""
        if chain.key not in self._adapters:
            raise ValueError(f"Unknown chain: {chain.key}")
        return self._adapters[chain.key]

    def __contains__(self, chain: ChainRef) -> bool:
        return chain.key in self._adapters

    @property
    def chains(self) -> list[ChainRef]:
        return [adapter.chain for adapter in self._adapters.values()]

    def by_family(self, family: ChainFamily) -> list[ChainQueryAdapter]:
        return [a for a in self._adapters.values() if a.family == family]

    @staticmethod
    def get_info(chain: ChainRef) -> dict:
        return CHAIN_INFO.get(chain.key, {"name": chain.key, "explorer": ""})

    def explorer_url(self, chain: ChainRef, tx_hash: str) -> str:
        explorer = self.get_info(chain)["explorer"]
        if not explorer:
            return tx_hash
        if "?" in explorer:
            base, query = explorer.split("?", 1)
            return f"{base}{tx_hash}?{query}"
        return f"{explorer}{tx_hash}"


__all__ = ["ChainQueryAdapter", "ChainRegistry", "CHAIN_INFO"]
