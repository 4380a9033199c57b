"""
Internet Computer collaborators: the fee ledger, the bridge orchestrator and
the per-collection mirror canisters, plus the wallet that signs source-chain
transactions. Services depend on these interfaces only.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from cknft_bridge.models import CastStatus, ChainRef, MintStatus, RemoteContractState


@dataclass(frozen=True)
class Account:
    """ICRC-1 account: principal plus optional 32-byte subaccount."""
    owner: str
    subaccount: Optional[bytes] = None


@dataclass
class LedgerAllowance:
    """Raw allowance as read from the fee ledger."""
    amount: int
    expires_at: Optional[int] = None  # nanoseconds since epoch


@dataclass
class CastRequest:
    """One asset to cast from its mirror canister to a remote collection."""
    token_id: str
    remote_contract: str
    target_chain: ChainRef
    target_owner: str
    gas_price: Optional[int] = None
    gas_limit: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None


@dataclass
class CastSubmission:
    """Per-request result of a cast call: a cast id or the rejection reason."""
    cast_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.cast_id is not None


class FeeLedgerClient(ABC):
    """ICRC-2 ledger that pays canister fees (cycles)."""

    @abstractmethod
    async def balance_of(self, account: Account) -> int:
        pass

    @abstractmethod
    async def allowance(self, account: Account, spender: Account) -> LedgerAllowance:
        pass

    @abstractmethod
    async def approve(self, spender: Account, amount: int, expires_at: Optional[int] = None) -> int:
        """
        Approve ``spender`` to draw up to ``amount``.

        Returns:
            Ledger block index of the approval

        Raises:
            RemoteError: the ledger rejected the approval
        """
        pass


class OrchestratorClient(ABC):
    """The bridge orchestrator canister."""

    canister_id: str

    @abstractmethod
    async def get_mirror_canister(self, contract: str, chain: ChainRef) -> Optional[str]:
        """Mirror canister registered for a source collection, if any."""
        pass

    @abstractmethod
    async def get_remote_approval_address(
        self,
        contract: str,
        chain: ChainRef,
        token_id: str,
        account: Account,
    ) -> Optional[str]:
        """Source-chain address the asset must be sent to before a mint."""
        pass

    @abstractmethod
    async def get_creation_cost(self, contract: str, chain: ChainRef) -> int:
        pass

    @abstractmethod
    async def create_mirror_canister(
        self,
        contract: str,
        chain: ChainRef,
        spender: Optional[Account] = None,
    ) -> str:
        """Create the mirror canister for a collection; returns its principal."""
        pass

    @abstractmethod
    async def get_remote_cost(self, contract: str, source: ChainRef, target: ChainRef) -> int:
        pass

    @abstractmethod
    async def create_remote(
        self,
        contract: str,
        source: ChainRef,
        target: ChainRef,
        gas_price: int,
        gas_limit: int,
        max_priority_fee_per_gas: int,
        spender: Optional[Account] = None,
    ) -> int:
        """Start deploying a remote collection; returns the contract id to poll."""
        pass

    @abstractmethod
    async def get_remote_status(self, contract_ids: list[int]) -> list[Optional[RemoteContractState]]:
        pass

    @abstractmethod
    async def get_funding_address(self, canister_id: str, target: ChainRef) -> Optional[str]:
        """Address that pays remote gas or rent on behalf of a mirror canister."""
        pass

    @abstractmethod
    async def get_mint_cost(self, contract: str, chain: ChainRef, token_id: str, mint_to: Account) -> Optional[int]:
        """Fee-ledger cost of minting one mirror, None when the orchestrator cannot price it."""
        pass

    @abstractmethod
    async def mint(
        self,
        contract: str,
        chain: ChainRef,
        token_id: str,
        mint_to: Account,
        spender: Optional[Account] = None,
    ) -> int:
        """Request a mirror mint for a locked asset; returns the request id."""
        pass

    @abstractmethod
    async def get_mint_status(self, request_ids: list[int]) -> list[Optional[MintStatus]]:
        pass


class MirrorCanisterClient(ABC):
    """A ckNFT mirror canister for one source collection."""

    canister_id: str

    @abstractmethod
    async def owner_of(self, token_ids: list[str]) -> list[Optional[str]]:
        """Owner principal per token, None where the token is not minted."""
        pass

    @abstractmethod
    async def cast_cost(self, token_id: str, contract: str, target: ChainRef) -> int:
        pass

    @abstractmethod
    async def cast(self, requests: list[CastRequest], spender: Optional[Account] = None) -> list[CastSubmission]:
        pass

    @abstractmethod
    async def cast_status(self, cast_ids: list[int]) -> list[Optional[CastStatus]]:
        pass

    @abstractmethod
    async def native_chain(self) -> tuple[str, ChainRef]:
        """(contract, chain) of the collection this canister mirrors."""
        pass

    @abstractmethod
    async def burn_funding_address(self, token_id: str) -> Optional[str]:
        """Native-chain address that pays the gas of returning ``token_id``."""
        pass

    @abstractmethod
    async def approve_tokens(
        self,
        token_ids: list[str],
        spender: Account,
        expires_at: Optional[int] = None,
    ) -> list[Optional[str]]:
        """
        ICRC-37 approval of ``spender`` per token.

        Returns:
            Per token, None when approved or the rejection reason
        """
        pass


class WalletSigner(ABC):
    """User wallet on a source chain. Keys never leave it."""

    @property
    @abstractmethod
    def address(self) -> str:
        pass

    @abstractmethod
    async def send_transaction(self, payload: Any) -> str:
        """Sign and submit; returns the transaction hash or signature."""
        pass
