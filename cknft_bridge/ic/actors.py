"""
Actor-backed canister clients.

Each client wraps an agent object exposing the canister's candid methods as
coroutines (``await actor.icrc2_allowance(args)``) and normalises the
results through ``cknft_bridge.ic.candid``.
"""

from typing import Any, Optional

from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from cknft_bridge.chains.base import is_rate_limited
from cknft_bridge.errors import AdapterError, RateLimitError, RemoteError
from cknft_bridge.ic import candid
from cknft_bridge.ic.base import (
    Account,
    CastRequest,
    CastSubmission,
    FeeLedgerClient,
    LedgerAllowance,
    MirrorCanisterClient,
    OrchestratorClient,
)
from cknft_bridge.models import CastStatus, ChainRef, MintStatus, RemoteContractState
from cknft_bridge.utils.logging import LoggerMixin


def _account(value: Optional[Account]) -> dict:
    return candid.account(value.owner, value.subaccount)


class ActorClient(LoggerMixin):
    """Shared call path: transport failures become AdapterError, throttling is retried."""

    def __init__(self, actor: Any, canister_id: str):
        self._actor = actor
        self.canister_id = canister_id

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    async def _call(self, method: str, *args: Any) -> Any:
        func = getattr(self._actor, method)
        try:
            return await func(*args)
        except Exception as e:
            if is_rate_limited(e):
                self.log.warning("Canister call throttled, retrying...", method=method)
                raise RateLimitError("Rate limit exceeded", "ic")
            raise AdapterError(f"{method} failed: {e}", "ic")


class ActorFeeLedger(ActorClient, FeeLedgerClient):
    """ICRC-2 fee ledger (the cycles ledger)."""

    async def balance_of(self, account: Account) -> int:
        return int(await self._call("icrc1_balance_of", _account(account)))

    async def allowance(self, account: Account, spender: Account) -> LedgerAllowance:
        raw = await self._call("icrc2_allowance", {
            "account": _account(account),
            "spender": _account(spender),
        })
        expires_at = candid.unwrap_opt(raw.get("expires_at", []))
        return LedgerAllowance(
            amount=int(raw["allowance"]),
            expires_at=int(expires_at) if expires_at is not None else None,
        )

    async def approve(self, spender: Account, amount: int, expires_at: Optional[int] = None) -> int:
        raw = await self._call("icrc2_approve", {
            "spender": _account(spender),
            "amount": amount,
            "expires_at": candid.opt(expires_at),
            "expected_allowance": [],
            "fee": [],
            "memo": [],
            "from_subaccount": [],
            "created_at_time": [],
        })
        block = candid.unwrap_result(raw)
        self.log.info("Fee ledger approval granted", spender=spender.owner, amount=amount, block=block)
        return int(block)


class ActorOrchestrator(ActorClient, OrchestratorClient):
    """The bridge orchestrator canister."""

    async def get_mirror_canister(self, contract: str, chain: ChainRef) -> Optional[str]:
        raw = await self._call("get_ck_nft_canister", [candid.contract_pointer(contract, chain)])
        principal = candid.unwrap_opt(raw[0]) if raw else None
        return str(principal) if principal is not None else None

    async def get_remote_approval_address(
        self,
        contract: str,
        chain: ChainRef,
        token_id: str,
        account: Account,
    ) -> Optional[str]:
        request = {
            "remoteNFTPointer": candid.nft_pointer(contract, chain, token_id),
            "account": _account(account),
        }
        raw = await self._call("get_remote_approval_address", request, [])
        return candid.unwrap_opt(raw)

    async def get_creation_cost(self, contract: str, chain: ChainRef) -> int:
        return int(await self._call("get_creation_cost", candid.contract_pointer(contract, chain)))

    async def create_mirror_canister(
        self,
        contract: str,
        chain: ChainRef,
        spender: Optional[Account] = None,
    ) -> str:
        defaults = {"logo": [], "name": [], "description": [], "symbol": []}
        raw = await self._call(
            "create_canister",
            candid.contract_pointer(contract, chain),
            defaults,
            candid.opt(_account(spender) if spender else None),
        )
        return str(candid.unwrap_result(raw))

    async def get_remote_cost(self, contract: str, source: ChainRef, target: ChainRef) -> int:
        return int(await self._call(
            "get_remote_cost",
            candid.contract_pointer(contract, source),
            candid.network_for(target),
        ))

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
        raw = await self._call(
            "create_remote",
            candid.contract_pointer(contract, source),
            candid.network_for(target),
            gas_price,
            gas_limit,
            max_priority_fee_per_gas,
            candid.opt(_account(spender) if spender else None),
        )
        return int(candid.unwrap_result(raw))

    async def get_remote_status(self, contract_ids: list[int]) -> list[Optional[RemoteContractState]]:
        raw = await self._call("get_remote_status", contract_ids)
        results = []
        for entry in raw:
            value = candid.unwrap_opt(entry)
            results.append(candid.decode_remote_status(value) if value is not None else None)
        return results

    async def get_funding_address(self, canister_id: str, target: ChainRef) -> Optional[str]:
        raw = await self._call("get_icrc99_address", canister_id, candid.network_for(target))
        return candid.unwrap_opt(raw)

    async def get_mint_cost(self, contract: str, chain: ChainRef, token_id: str, mint_to: Account) -> Optional[int]:
        request = {
            "nft": candid.nft_pointer(contract, chain, token_id),
            "resume": [],
            "mintToAccount": _account(mint_to),
            "spender": [],
        }
        raw = await self._call("get_mint_cost", [request])
        cost = candid.unwrap_opt(raw[0]) if raw else None
        return int(cost) if cost is not None else None

    async def mint(
        self,
        contract: str,
        chain: ChainRef,
        token_id: str,
        mint_to: Account,
        spender: Optional[Account] = None,
    ) -> int:
        request = {
            "nft": candid.nft_pointer(contract, chain, token_id),
            "resume": [],
            "mintToAccount": _account(mint_to),
            "spender": [],
        }
        # The second argument names the account that approved the fee
        raw = await self._call("mint", request, candid.opt(_account(spender) if spender else None))
        return int(candid.unwrap_result(raw))

    async def get_mint_status(self, request_ids: list[int]) -> list[Optional[MintStatus]]:
        raw = await self._call("get_mint_status", request_ids)
        results = []
        for request_id, entry in zip(request_ids, raw):
            value = candid.unwrap_opt(entry)
            results.append(candid.decode_mint_status(request_id, value) if value is not None else None)
        return results


class ActorMirrorCanister(ActorClient, MirrorCanisterClient):
    """A ckNFT mirror canister."""

    async def owner_of(self, token_ids: list[str]) -> list[Optional[str]]:
        raw = await self._call("icrc7_owner_of", [int(t) for t in token_ids])
        owners = []
        for entry in raw:
            value = candid.unwrap_opt(entry)
            owners.append(str(value["owner"]) if value is not None else None)
        return owners

    async def cast_cost(self, token_id: str, contract: str, target: ChainRef) -> int:
        return int(await self._call("icrc99_cast_cost", {
            "tokenId": int(token_id),
            "contract": contract,
            "network": candid.network_for(target),
        }))

    async def cast(self, requests: list[CastRequest], spender: Optional[Account] = None) -> list[CastSubmission]:
        payload = [
            {
                "tokenId": int(r.token_id),
                "remoteContract": candid.contract_pointer(r.remote_contract, r.target_chain),
                "targetOwner": r.target_owner,
                "gasPrice": candid.opt(r.gas_price),
                "gasLimit": candid.opt(r.gas_limit),
                "maxPriorityFeePerGas": candid.opt(r.max_priority_fee_per_gas),
                "memo": [],
                "fromSubaccount": [],
                "created_at_time": [],
            }
            for r in requests
        ]
        raw = await self._call("icrc99_cast", payload, candid.opt(_account(spender) if spender else None))

        submissions = []
        for entry in raw:
            value = candid.unwrap_opt(entry)
            if value is None:
                submissions.append(CastSubmission(error="No result"))
                continue
            try:
                submissions.append(CastSubmission(cast_id=int(candid.unwrap_result(value))))
            except RemoteError as e:
                submissions.append(CastSubmission(error=e.message))
        return submissions

    async def cast_status(self, cast_ids: list[int]) -> list[Optional[CastStatus]]:
        raw = await self._call("icrc99_cast_status", cast_ids, [])
        results = []
        for entry in raw:
            value = candid.unwrap_opt(entry)
            results.append(candid.decode_cast_state(value) if value is not None else None)
        return results

    async def native_chain(self) -> tuple[str, ChainRef]:
        return candid.decode_contract_pointer(await self._call("icrc99_native_chain"))

    async def burn_funding_address(self, token_id: str) -> Optional[str]:
        raw = candid.unwrap_opt(await self._call("icrc99_burn_fund_address", int(token_id)))
        if raw is None:
            return None
        address, _network = raw
        return address

    async def approve_tokens(
        self,
        token_ids: list[str],
        spender: Account,
        expires_at: Optional[int] = None,
    ) -> list[Optional[str]]:
        payload = [
            {
                "token_id": int(t),
                "approval_info": {
                    "spender": _account(spender),
                    "expires_at": candid.opt(expires_at),
                    "memo": [],
                    "from_subaccount": [],
                    "created_at_time": [],
                },
            }
            for t in token_ids
        ]
        raw = await self._call("icrc37_approve_tokens", payload)

        errors: list[Optional[str]] = []
        for entry in raw:
            value = candid.unwrap_opt(entry)
            if value is None:
                errors.append("No result")
                continue
            try:
                candid.unwrap_result(value)
                errors.append(None)
            except RemoteError as e:
                errors.append(e.message)
        self.log.info("Token approvals requested", spender=spender.owner, tokens=len(token_ids))
        return errors
