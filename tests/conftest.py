"""
Pytest configuration and fixtures.

The fakes below stand in for chain RPCs and canisters. They keep call
counters so tests can assert which lookups actually happened.
"""

import asyncio
import itertools
from collections import Counter
from typing import Any, Iterable, Optional

import pytest

from cknft_bridge.chains import ChainRegistry
from cknft_bridge.chains.base import ChainQueryAdapter
from cknft_bridge.errors import AdapterError, EnumerationUnsupportedError
from cknft_bridge.ic.base import (
    Account,
    CastRequest,
    CastSubmission,
    FeeLedgerClient,
    LedgerAllowance,
    MirrorCanisterClient,
    OrchestratorClient,
    WalletSigner,
)
from cknft_bridge.models import (
    CastState,
    CastStatus,
    ChainRef,
    MintPhase,
    MintStatus,
    RemoteContractState,
    TransferEvent,
)

EVM = ChainRef.evm(1)
BASE = ChainRef.evm(8453)
IC = ChainRef.ic()

OWNER = "0x" + "a" * 40
BRIDGE = "0x" + "b" * 40
STRANGER = "0x" + "c" * 40
RECEIVER = "0x" + "d" * 40
FUNDING = "0x" + "e" * 40
COLLECTION = "0x" + "1" * 40
REMOTE_COLLECTION = "0x" + "2" * 40
BURN = "0x" + "f" * 40

PRINCIPAL = "user-principal"
ORCHESTRATOR_ID = "orchestrator-canister"
MIRROR_ID = "mirror-canister"


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class FakeChainAdapter(ChainQueryAdapter):
    """In-memory chain: token holders, transfer log and native balances."""

    native_symbol = "ETH"
    native_decimals = 18

    def __init__(self, chain: ChainRef = EVM):
        self.chain = chain
        self.height = 10_000
        self.enumerable = True
        self.owners: dict[str, str] = {}
        self.transfers: list[TransferEvent] = []
        self.balances: dict[str, int] = {}
        self.native_per_asset = 1_000
        self.native_deploy = 5_000
        self.fail: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.calls: Counter = Counter()

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        if method in self.delays:
            await asyncio.sleep(self.delays[method])
        if method in self.fail:
            raise self.fail[method]

    def transfer(self, token_id: str, sender: str, recipient: str, height: int) -> None:
        """Record a transfer and move the token."""
        self.transfers.append(TransferEvent(
            contract=COLLECTION,
            token_id=token_id,
            sender=sender,
            recipient=recipient,
            height=height,
            tx_hash=f"0xtx{token_id}-{height}",
        ))
        self.owners[token_id] = recipient

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def get_latest_height(self) -> int:
        await self._enter("get_latest_height")
        return self.height

    async def list_owned(self, owner: str, contract: str) -> list[str]:
        await self._enter("list_owned")
        if not self.enumerable:
            raise EnumerationUnsupportedError("Not enumerable", self.chain.key)
        return sorted(t for t, holder in self.owners.items() if self.same_address(holder, owner))

    async def get_transfers(
        self,
        contract: str,
        from_height: int,
        to_height: int,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
        token_ids: Optional[Iterable[str]] = None,
    ) -> list[TransferEvent]:
        await self._enter("get_transfers")
        wanted = set(token_ids) if token_ids is not None else None
        return [
            e for e in self.transfers
            if from_height <= e.height <= to_height
            and (sender is None or self.same_address(e.sender, sender))
            and (recipient is None or self.same_address(e.recipient, recipient))
            and (wanted is None or e.token_id in wanted)
        ]

    async def owner_of(self, contract: str, token_id: str) -> Optional[str]:
        await self._enter("owner_of")
        return self.owners.get(token_id)

    async def get_native_balance(self, address: str) -> int:
        await self._enter("get_native_balance")
        return self.balances.get(address, 0)

    async def estimate_native_funding(self, asset_count: int, deploy_collection: bool) -> int:
        await self._enter("estimate_native_funding")
        return self.native_per_asset * asset_count + (self.native_deploy if deploy_collection else 0)

    async def build_lock_transaction(self, contract: str, token_id: str, owner: str, destination: str) -> Any:
        await self._enter("build_lock_transaction")
        return {"kind": "lock", "token_id": token_id, "from": owner, "to": destination}

    async def build_native_transfer(self, sender: str, recipient: str, amount: int) -> Any:
        await self._enter("build_native_transfer")
        return {"kind": "native", "from": sender, "to": recipient, "value": amount}


class FakeWallet(WalletSigner):
    """Signs by applying the payload to the fake chain."""

    def __init__(self, address: str, adapter: FakeChainAdapter):
        self._address = address
        self.adapter = adapter
        self.sent: list[dict] = []
        self.fail: Optional[Exception] = None
        self.deliver = True

    @property
    def address(self) -> str:
        return self._address

    async def send_transaction(self, payload: Any) -> str:
        if self.fail is not None:
            raise self.fail
        self.sent.append(payload)
        if self.deliver:
            self.land(payload)
        return f"0xsent{len(self.sent)}"

    def land(self, payload: dict) -> None:
        """Apply a sent payload to the chain."""
        if payload["kind"] == "lock":
            self.adapter.transfer(payload["token_id"], payload["from"], payload["to"], self.adapter.height)
        else:
            to = payload["to"]
            self.adapter.balances[to] = self.adapter.balances.get(to, 0) + payload["value"]


class FakeMirror(MirrorCanisterClient):
    """A mirror canister with scripted cast progress."""

    def __init__(self, canister_id: str = MIRROR_ID):
        self.canister_id = canister_id
        self.owners: dict[str, str] = {}
        self.cast_fee = 300
        self.default_script = [CastState.WAITING_ON_MINT, CastState.COMPLETED]
        self.scripts: dict[int, list[CastState]] = {}
        self.reject: set[str] = set()
        self.failing_status_rounds = 0
        self.casts: list[CastRequest] = []
        self.native: tuple[str, ChainRef] = (COLLECTION, EVM)
        self.burn_addresses: dict[str, str] = {}
        self.token_approvals: list[tuple[str, Account]] = []
        self.reject_approval: set[str] = set()
        self.calls: Counter = Counter()
        self.fail: dict[str, Exception] = {}
        self._ids = itertools.count(1)

    def _enter(self, method: str) -> None:
        self.calls[method] += 1
        if method in self.fail:
            raise self.fail[method]

    async def owner_of(self, token_ids: list[str]) -> list[Optional[str]]:
        self._enter("owner_of")
        return [self.owners.get(str(t)) for t in token_ids]

    async def cast_cost(self, token_id: str, contract: str, target: ChainRef) -> int:
        self._enter("cast_cost")
        return self.cast_fee

    async def cast(self, requests: list[CastRequest], spender: Optional[Account] = None) -> list[CastSubmission]:
        self._enter("cast")
        submissions = []
        for request in requests:
            if request.token_id in self.reject:
                submissions.append(CastSubmission(error=f"Token {request.token_id} rejected"))
                continue
            cast_id = next(self._ids)
            self.casts.append(request)
            self.scripts.setdefault(cast_id, list(self.default_script))
            submissions.append(CastSubmission(cast_id=cast_id))
        return submissions

    async def cast_status(self, cast_ids: list[int]) -> list[Optional[CastStatus]]:
        self._enter("cast_status")
        if self.failing_status_rounds:
            self.failing_status_rounds -= 1
            raise AdapterError("Canister unreachable", "ic")
        statuses = []
        for cast_id in cast_ids:
            script = self.scripts.get(cast_id)
            if not script:
                statuses.append(None)
                continue
            state = script.pop(0) if len(script) > 1 else script[0]
            detail = "Out of gas" if state == CastState.ERROR else None
            statuses.append(CastStatus(cast_id=cast_id, state=state, detail=detail))
        return statuses

    async def native_chain(self) -> tuple[str, ChainRef]:
        self._enter("native_chain")
        return self.native

    async def burn_funding_address(self, token_id: str) -> Optional[str]:
        self._enter("burn_funding_address")
        return self.burn_addresses.get(token_id, BURN)

    async def approve_tokens(
        self,
        token_ids: list[str],
        spender: Account,
        expires_at: Optional[int] = None,
    ) -> list[Optional[str]]:
        self._enter("approve_tokens")
        errors = []
        for token_id in token_ids:
            if token_id in self.reject_approval:
                errors.append("Unauthorized")
                continue
            self.token_approvals.append((token_id, spender))
            errors.append(None)
        return errors


class FakeOrchestrator(OrchestratorClient):
    """Orchestrator canister with in-memory mirrors and counted calls."""

    def __init__(self):
        self.canister_id = ORCHESTRATOR_ID
        self.mirrors: dict[tuple[str, str], str] = {}
        self.canisters: dict[str, FakeMirror] = {}
        self.approval_address: Optional[str] = BRIDGE
        self.funding_address: Optional[str] = FUNDING
        self.creation_cost = 1_000
        self.remote_cost = 5_000
        self.mint_fee: Optional[int] = 200
        self.mint_script = [MintPhase.MINTING, MintPhase.COMPLETE]
        self.approval_address_tokens: list[str] = []
        self.minted: dict[int, tuple[str, Account]] = {}
        self.remote_deployments: list[tuple] = []
        self.calls: Counter = Counter()
        self.fail: dict[str, Exception] = {}
        self.delay = 0.0
        self._ids = itertools.count(1)

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if method in self.fail:
            raise self.fail[method]

    def mirror_factory(self, canister_id: str) -> FakeMirror:
        return self.canisters.setdefault(canister_id, FakeMirror(canister_id))

    def register_mirror(self, contract: str, chain: ChainRef, canister_id: str = MIRROR_ID) -> FakeMirror:
        self.mirrors[(chain.normalize(contract), chain.key)] = canister_id
        return self.mirror_factory(canister_id)

    async def get_mirror_canister(self, contract: str, chain: ChainRef) -> Optional[str]:
        await self._enter("get_mirror_canister")
        return self.mirrors.get((chain.normalize(contract), chain.key))

    async def get_remote_approval_address(
        self,
        contract: str,
        chain: ChainRef,
        token_id: str,
        account: Account,
    ) -> Optional[str]:
        await self._enter("get_remote_approval_address")
        self.approval_address_tokens.append(token_id)
        return self.approval_address

    async def get_creation_cost(self, contract: str, chain: ChainRef) -> int:
        await self._enter("get_creation_cost")
        return self.creation_cost

    async def create_mirror_canister(self, contract: str, chain: ChainRef, spender: Optional[Account] = None) -> str:
        await self._enter("create_mirror_canister")
        self.register_mirror(contract, chain)
        return MIRROR_ID

    async def get_remote_cost(self, contract: str, source: ChainRef, target: ChainRef) -> int:
        await self._enter("get_remote_cost")
        return self.remote_cost

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
        await self._enter("create_remote")
        self.remote_deployments.append((contract, source, target, gas_price, gas_limit))
        return 7

    async def get_remote_status(self, contract_ids: list[int]) -> list[Optional[RemoteContractState]]:
        await self._enter("get_remote_status")
        return [
            RemoteContractState(contract_id=i, address=REMOTE_COLLECTION, confirmed=True, deployment_tx="0xdeploy")
            for i in contract_ids
        ]

    async def get_funding_address(self, canister_id: str, target: ChainRef) -> Optional[str]:
        await self._enter("get_funding_address")
        return self.funding_address

    async def get_mint_cost(self, contract: str, chain: ChainRef, token_id: str, mint_to: Account) -> Optional[int]:
        await self._enter("get_mint_cost")
        return self.mint_fee

    async def mint(
        self,
        contract: str,
        chain: ChainRef,
        token_id: str,
        mint_to: Account,
        spender: Optional[Account] = None,
    ) -> int:
        await self._enter("mint")
        request_id = next(self._ids)
        self.minted[request_id] = (token_id, mint_to)
        return request_id

    async def get_mint_status(self, request_ids: list[int]) -> list[Optional[MintStatus]]:
        await self._enter("get_mint_status")
        phase = self.mint_script.pop(0) if len(self.mint_script) > 1 else self.mint_script[0]
        statuses = []
        for request_id in request_ids:
            token_id, mint_to = self.minted[request_id]
            if phase == MintPhase.COMPLETE:
                self.mirror_factory(MIRROR_ID).owners[token_id] = mint_to.owner
            detail = "Owner check failed" if phase == MintPhase.ERROR else None
            statuses.append(MintStatus(request_id=request_id, phase=phase, detail=detail))
        return statuses


class FakeLedger(FeeLedgerClient):
    """Fee ledger for a single caller."""

    def __init__(self, owner: Account, balance: int = 0):
        self.owner = owner
        self.balances: dict[Account, int] = {owner: balance}
        self.allowances: dict[tuple[Account, Account], LedgerAllowance] = {}
        self.approvals: list[tuple[Account, int, Optional[int]]] = []

    async def balance_of(self, account: Account) -> int:
        return self.balances.get(account, 0)

    async def allowance(self, account: Account, spender: Account) -> LedgerAllowance:
        return self.allowances.get((account, spender), LedgerAllowance(amount=0))

    async def approve(self, spender: Account, amount: int, expires_at: Optional[int] = None) -> int:
        self.approvals.append((spender, amount, expires_at))
        self.allowances[(self.owner, spender)] = LedgerAllowance(amount=amount, expires_at=expires_at)
        return len(self.approvals)


@pytest.fixture
def account() -> Account:
    return Account(PRINCIPAL)


@pytest.fixture
def adapter() -> FakeChainAdapter:
    return FakeChainAdapter(EVM)


@pytest.fixture
def target_adapter() -> FakeChainAdapter:
    return FakeChainAdapter(BASE)


@pytest.fixture
def orchestrator() -> FakeOrchestrator:
    return FakeOrchestrator()


@pytest.fixture
def ledger(account: Account) -> FakeLedger:
    return FakeLedger(account, balance=100_000)


@pytest.fixture
def registry(adapter: FakeChainAdapter, target_adapter: FakeChainAdapter) -> ChainRegistry:
    return ChainRegistry([adapter, target_adapter])
