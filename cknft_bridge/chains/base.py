"""
Chain abstraction layer for NFT ownership queries.
One adapter per chain family; the engine only talks to this interface.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from cknft_bridge.models import ChainFamily, ChainRef, TransferEvent


def is_rate_limited(error: Exception) -> bool:
    """Providers report throttling in the message text rather than a typed error."""
    text = str(error).lower()
    return "429" in text or "rate limit" in text or "too many requests" in text


class ChainQueryAdapter(ABC):
    """Uniform read access to a chain's ownership, event and balance primitives."""

    chain: ChainRef

    # Native currency
    native_symbol: str
    native_decimals: int

    @property
    def family(self) -> ChainFamily:
        return self.chain.family

    @abstractmethod
    async def initialize(self) -> None:
        """Open RPC connections."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close connections and cleanup."""
        pass

    # ===================
    # Ownership
    # ===================

    @abstractmethod
    async def get_latest_height(self) -> int:
        """Current block number or slot."""
        pass

    @abstractmethod
    async def list_owned(self, owner: str, contract: str) -> list[str]:
        """
        Token ids currently held by ``owner`` via an enumerable index.

        Raises:
            EnumerationUnsupportedError: the contract cannot be enumerated
        """
        pass

    @abstractmethod
    async def get_transfers(
        self,
        contract: str,
        from_height: int,
        to_height: int,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
        token_ids: Optional[Iterable[str]] = None,
    ) -> list[TransferEvent]:
        """Transfer history inside a bounded window, oldest first."""
        pass

    @abstractmethod
    async def owner_of(self, contract: str, token_id: str) -> Optional[str]:
        """Current holder, or None when the token is burned or does not exist."""
        pass

    # ===================
    # Funding
    # ===================

    @abstractmethod
    async def get_native_balance(self, address: str) -> int:
        """Native balance in base units (wei, lamports)."""
        pass

    @abstractmethod
    async def estimate_native_funding(self, asset_count: int, deploy_collection: bool) -> int:
        """
        Raw native cost of landing ``asset_count`` mirrors, from the live fee schedule.

        No safety margin is applied here.
        """
        pass

    # ===================
    # Transactions
    # ===================

    @abstractmethod
    async def build_lock_transaction(
        self,
        contract: str,
        token_id: str,
        owner: str,
        destination: str,
    ) -> Any:
        """Unsigned payload moving the asset to a bridge address, for the wallet to sign."""
        pass

    @abstractmethod
    async def build_native_transfer(self, sender: str, recipient: str, amount: int) -> Any:
        """Unsigned payload sending ``amount`` base units of the native currency."""
        pass

    async def deployment_gas_params(self) -> tuple[int, int, int]:
        """(gas_price, gas_limit, max_priority_fee_per_gas) for a remote collection deployment."""
        return 0, 0, 0

    def same_address(self, a: Optional[str], b: Optional[str]) -> bool:
        return self.chain.same_address(a, b)
