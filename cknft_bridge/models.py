"""
Core data types shared by the adapters and services.
Assets are immutable once discovered; ownership states are recomputed
on every discovery pass.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ChainFamily(str, Enum):
    """Blockchain families the bridge can reach."""
    EVM = "evm"
    SOLANA = "solana"
    IC = "ic"


@dataclass(frozen=True)
class ChainRef:
    """A specific network within a chain family (chain id or cluster name)."""
    family: ChainFamily
    network: str

    @classmethod
    def evm(cls, chain_id: int) -> "ChainRef":
        return cls(ChainFamily.EVM, str(chain_id))

    @classmethod
    def solana(cls, cluster: str = "mainnet") -> "ChainRef":
        return cls(ChainFamily.SOLANA, cluster)

    @classmethod
    def ic(cls) -> "ChainRef":
        return cls(ChainFamily.IC, "mainnet")

    @property
    def key(self) -> str:
        return f"{self.family.value}:{self.network}"

    def normalize(self, address: Optional[str]) -> Optional[str]:
        """EVM addresses are hex and compare case-insensitively; base58 and principals do not."""
        if address is None:
            return None
        if self.family == ChainFamily.EVM:
            return address.lower()
        return address

    def same_address(self, a: Optional[str], b: Optional[str]) -> bool:
        if a is None or b is None:
            return False
        return self.normalize(a) == self.normalize(b)


@dataclass(frozen=True)
class Asset:
    """A bridgeable item as seen on its source chain."""
    chain: ChainRef
    contract: str  # EVM contract, Solana collection mint, or IC canister
    token_id: str
    owner: str  # owner address at the source when discovered

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.chain.key, self.chain.normalize(self.contract), self.token_id)


class OwnershipState(str, Enum):
    """Derived ownership classification of a candidate asset."""
    OWNED = "owned"
    IN_BRIDGE = "in-bridge"
    READY_TO_FINALIZE = "ready-to-finalize"
    ALREADY_MIGRATED = "already-migrated"
    UNKNOWN = "unknown"


@dataclass
class DiscoveredAsset:
    """An asset together with its classification from one discovery pass."""
    asset: Asset
    state: OwnershipState
    current_holder: Optional[str] = None
    transfer_tx: Optional[str] = None  # latest outgoing transfer, when known
    mirror_owner: Optional[str] = None  # owner of the ckNFT on the IC
    mirror_canister: Optional[str] = None  # set for ALREADY_MIGRATED
    error: Optional[str] = None

    @property
    def selectable_for_import(self) -> bool:
        """
        Already-mirrored assets cannot be imported (or, for remote casts,
        burned back to the IC) a second time.
        """
        return self.state not in (OwnershipState.ALREADY_MIGRATED, OwnershipState.UNKNOWN)

    @property
    def selectable_for_return(self) -> bool:
        """Only a mirrored asset has a ckNFT that can be returned to its native chain."""
        return self.state == OwnershipState.ALREADY_MIGRATED and self.mirror_canister is not None

    def mirror_asset(self) -> Asset:
        """The ckNFT standing in for this asset on the IC."""
        if not self.selectable_for_return:
            raise ValueError(f"Token {self.asset.token_id} has no mirror on the IC")
        return Asset(
            chain=ChainRef.ic(),
            contract=self.mirror_canister,
            token_id=self.asset.token_id,
            owner=self.mirror_owner,
        )


@dataclass
class DiscoveryResult:
    """Assets found by a scan plus the errors of any stage that failed."""
    assets: list[DiscoveredAsset] = field(default_factory=list)
    stage_errors: dict[str, str] = field(default_factory=dict)

    def by_state(self, state: OwnershipState) -> list[DiscoveredAsset]:
        return [a for a in self.assets if a.state == state]

    def counts(self) -> dict[OwnershipState, int]:
        counts = {state: 0 for state in OwnershipState}
        for item in self.assets:
            counts[item.state] += 1
        return counts

    def find(self, token_id: str) -> Optional[DiscoveredAsset]:
        for item in self.assets:
            if item.asset.token_id == token_id:
                return item
        return None

    @property
    def is_partial(self) -> bool:
        return bool(self.stage_errors)


@dataclass(frozen=True)
class TransferEvent:
    """A single ownership transfer observed on the source chain."""
    contract: str
    token_id: str
    sender: str
    recipient: str
    height: int  # block number or slot
    tx_hash: Optional[str] = None


@dataclass
class BridgeTarget:
    """Where mirrored assets land and what must exist there first."""
    chain: ChainRef
    mirror_canister: Optional[str] = None  # ckNFT canister holding the IC side
    remote_contract: Optional[str] = None  # deployed collection on the remote chain
    collection_exists: bool = False
    funding_address: Optional[str] = None  # pays remote gas/rent for the orchestrator


# ===================
# Remote progress
# ===================

class CastState(str, Enum):
    """Sub-states a cast passes through on its way to the remote chain."""
    CREATED = "Created"
    SUBMITTING_TO_ORCHESTRATOR = "SubmittingToOrchestrator"
    SUBMITTED_TO_ORCHESTRATOR = "SubmittedToOrchestrator"
    WAITING_ON_CONTRACT = "WaitingOnContract"
    WAITING_ON_MINT = "WaitingOnMint"
    WAITING_ON_TRANSFER = "WaitingOnTransfer"
    COMPLETED = "Completed"
    REMOTE_FINALIZED = "RemoteFinalized"
    ERROR = "Error"

    @property
    def is_terminal(self) -> bool:
        return self in (CastState.COMPLETED, CastState.REMOTE_FINALIZED, CastState.ERROR)

    @property
    def is_success(self) -> bool:
        return self in (CastState.COMPLETED, CastState.REMOTE_FINALIZED)


@dataclass
class CastStatus:
    """Latest observed state of one cast."""
    cast_id: int
    state: CastState
    detail: Optional[str] = None  # tx hash, remote cast id or error text
    history: list[CastState] = field(default_factory=list)


class MintPhase(str, Enum):
    """Orchestrator-side phases of an import mint."""
    CHECKING_OWNER = "CheckingOwner"
    RETRIEVING_METADATA = "RetrievingMetadata"
    TRANSFERRING = "Transferring"
    MINTING = "Minting"
    COMPLETE = "Complete"
    ERROR = "Err"

    @property
    def is_terminal(self) -> bool:
        return self in (MintPhase.COMPLETE, MintPhase.ERROR)


@dataclass
class MintStatus:
    """Latest observed state of one mint request."""
    request_id: int
    phase: MintPhase
    detail: Optional[str] = None
    mint_tx: Optional[int] = None
    approval_error: Optional[str] = None


@dataclass
class RemoteContractState:
    """Deployment state of a remote collection contract."""
    contract_id: int
    address: Optional[str] = None
    confirmed: bool = False
    deployment_tx: Optional[str] = None
    mirror_canister: Optional[str] = None
