"""
Internet Computer collaborators: fee ledger, orchestrator and mirror canisters.
"""

from .actors import ActorFeeLedger, ActorMirrorCanister, ActorOrchestrator
from .base import (
    Account,
    CastRequest,
    CastSubmission,
    FeeLedgerClient,
    LedgerAllowance,
    MirrorCanisterClient,
    OrchestratorClient,
    WalletSigner,
)

__all__ = [
    "Account",
    "ActorFeeLedger",
    "ActorMirrorCanister",
    "ActorOrchestrator",
    "CastRequest",
    "CastSubmission",
    "FeeLedgerClient",
    "LedgerAllowance",
    "MirrorCanisterClient",
    "OrchestratorClient",
    "WalletSigner",
]
