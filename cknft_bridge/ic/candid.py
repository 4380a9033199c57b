"""
Decoding of candid values as returned by IC agents.

Variants arrive as single-key dicts (``{"Ok": 5}``), options as empty or
one-element lists. Everything tagged stays inside this module; callers get
enums and dataclasses.
"""

from typing import Any, Optional

from cknft_bridge.errors import RemoteError
from cknft_bridge.models import (
    CastState,
    CastStatus,
    ChainFamily,
    ChainRef,
    MintPhase,
    MintStatus,
    RemoteContractState,
)

SOLANA_CLUSTERS = {
    "mainnet": "Mainnet",
    "devnet": "Devnet",
    "testnet": "Testnet",
}


def opt(value: Any) -> list:
    """Encode a Python optional as a candid opt."""
    return [] if value is None else [value]


def unwrap_opt(value: Any) -> Any:
    """Decode a candid opt; plain values pass through."""
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        if len(value) == 1:
            return value[0]
    return value


def variant(value: Any) -> tuple[str, Any]:
    """Split a variant into (tag, payload)."""
    if isinstance(value, str):
        return value, None
    if not isinstance(value, dict) or len(value) != 1:
        raise ValueError(f"Not a candid variant: {value!r}")
    tag, payload = next(iter(value.items()))
    return tag, payload


def describe(value: Any) -> str:
    """Human-readable rendering of an error variant."""
    try:
        tag, payload = variant(value)
    except ValueError:
        return str(value)
    if payload is None:
        return tag
    if isinstance(payload, dict) and len(payload) == 1:
        return f"{tag}: {describe(payload)}"
    if isinstance(payload, (list, tuple)):
        return f"{tag}({', '.join(str(p) for p in payload)})"
    return f"{tag}: {payload}"


def unwrap_result(value: Any, chain: Optional[str] = "ic") -> Any:
    """
    Return the payload of an ``Ok``/``ok`` result.

    Raises:
        RemoteError: the result is ``Err``/``err``, with the error tag as code
    """
    tag, payload = variant(value)
    if tag in ("Ok", "ok"):
        return payload
    if tag in ("Err", "err"):
        try:
            code, _ = variant(payload)
        except ValueError:
            code = None
        raise RemoteError(describe(payload), result=payload, chain=chain, code=code)
    raise ValueError(f"Not a candid result: {value!r}")


# ===================
# Encoding
# ===================

def network_for(chain: ChainRef) -> dict:
    """Candid Network variant for a chain."""
    if chain.family == ChainFamily.EVM:
        return {"Ethereum": [int(chain.network)]}
    if chain.family == ChainFamily.SOLANA:
        cluster = SOLANA_CLUSTERS.get(chain.network)
        return {"Solana": [{cluster: None} if cluster else {"Custom": chain.network}]}
    return {"IC": []}


def chain_for(network: Any) -> ChainRef:
    """Inverse of network_for."""
    tag, payload = variant(network)
    payload = unwrap_opt(payload)
    if tag == "Ethereum":
        return ChainRef.evm(int(payload) if payload is not None else 1)
    if tag == "Solana":
        if payload is None:
            return ChainRef.solana()
        cluster, custom = variant(payload)
        return ChainRef.solana(custom if cluster == "Custom" else cluster.lower())
    if tag == "IC":
        return ChainRef.ic()
    raise ValueError(f"Unsupported network: {tag}")


def contract_pointer(contract: str, chain: ChainRef) -> dict:
    return {"contract": contract, "network": network_for(chain)}


def nft_pointer(contract: str, chain: ChainRef, token_id: str) -> dict:
    return {"tokenId": int(token_id), "contract": contract, "network": network_for(chain)}


def account(owner: str, subaccount: Optional[bytes] = None) -> dict:
    return {"owner": owner, "subaccount": opt(subaccount)}


# ===================
# Decoding
# ===================

def decode_cast_state(value: Any) -> CastStatus:
    """Decode a CastStateShared record."""
    tag, payload = variant(value["status"])
    state = CastState(tag)

    detail = None
    if state == CastState.ERROR:
        detail = describe(payload)
    elif state == CastState.SUBMITTED_TO_ORCHESTRATOR:
        detail = str(payload["remoteCastId"])
    elif state in (CastState.WAITING_ON_CONTRACT, CastState.WAITING_ON_MINT, CastState.WAITING_ON_TRANSFER):
        detail = payload["transaction"]
    elif payload is not None:
        detail = str(payload)

    history = []
    for entry, _timestamp in value.get("history", []):
        history.append(CastState(variant(entry)[0]))

    return CastStatus(
        cast_id=int(value["castId"]),
        state=state,
        detail=detail,
        history=history,
    )


def decode_mint_status(request_id: int, value: Any) -> MintStatus:
    """Decode a MintStatus variant."""
    tag, payload = variant(value)
    phase = MintPhase(tag)

    if phase == MintPhase.COMPLETE:
        return MintStatus(
            request_id=request_id,
            phase=phase,
            mint_tx=int(payload["mintTrx"]),
            approval_error=unwrap_opt(payload.get("approvalError", [])),
        )
    if phase == MintPhase.ERROR:
        return MintStatus(request_id=request_id, phase=phase, detail=describe(payload))
    if phase in (MintPhase.CHECKING_OWNER, MintPhase.RETRIEVING_METADATA):
        return MintStatus(request_id=request_id, phase=phase, detail=f"retries={payload['retries']}")
    return MintStatus(request_id=request_id, phase=phase)


def decode_contract_pointer(value: Any) -> tuple[str, ChainRef]:
    """Decode a RemoteContractPointer record."""
    return str(value["contract"]), chain_for(value["network"])


def decode_remote_status(value: Any) -> RemoteContractState:
    """Decode a ContractStateShared record."""
    mirror = unwrap_opt(value.get("ckNFTCanisterId", []))
    return RemoteContractState(
        contract_id=int(value["contractId"]),
        address=unwrap_opt(value.get("address", [])),
        confirmed=bool(value.get("confirmed", False)),
        deployment_tx=unwrap_opt(value.get("deploymentTrx", [])),
        mirror_canister=str(mirror) if mirror is not None else None,
    )
