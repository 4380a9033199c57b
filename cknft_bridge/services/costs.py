"""
Cost estimation and funding reconciliation.

Fee-ledger costs (cycles) and native-chain funding (gas, rent) are tracked
separately and never summed. Every approval check and approval request goes
through ``buffered_amount`` so the two always agree on the 20% buffer.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from cknft_bridge.chains import ChainRegistry
from cknft_bridge.config import settings
from cknft_bridge.errors import AdapterError, BridgeError, InsufficientAllowanceError, InsufficientBalanceError
from cknft_bridge.ic.base import Account, FeeLedgerClient, LedgerAllowance, OrchestratorClient
from cknft_bridge.models import Asset, BridgeTarget, ChainFamily, ChainRef
from cknft_bridge.services.mirror_oracle import RemoteMintOracle
from cknft_bridge.utils.logging import LoggerMixin

APPROVAL_BUFFER_PERCENT = 120


def buffered_amount(cost: int) -> int:
    """ceil(cost * 1.2) in integer arithmetic."""
    return -(-cost * APPROVAL_BUFFER_PERCENT // 100)


def with_margin(amount: int, percent: int) -> int:
    return -(-amount * percent // 100)


class ApprovalPurpose(str, Enum):
    """What a fee-ledger approval pays for."""
    DEPLOYMENT = "deployment"  # mirror canister or remote collection
    ASSET = "asset"  # per-asset mint or cast


@dataclass(frozen=True)
class ApprovalRequirement:
    purpose: ApprovalPurpose
    spender: Account
    base_cost: int

    @property
    def amount(self) -> int:
        return buffered_amount(self.base_cost)


@dataclass
class CostBreakdown:
    """Costs of one bridge operation. ``total`` is fee-ledger units only."""
    per_asset_cost: dict[str, int] = field(default_factory=dict)
    deployment_cost: Optional[int] = None
    native_funding_required: int = 0
    native_symbol: str = ""
    native_chain: Optional[ChainRef] = None
    native_funding_address: Optional[str] = None
    # Returns fund one gas address per token instead of a single one
    native_funding_by_address: dict[str, int] = field(default_factory=dict)
    approvals: list[ApprovalRequirement] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (self.deployment_cost or 0) + sum(self.per_asset_cost.values())

    @property
    def required_fee(self) -> int:
        return buffered_amount(self.total)

    def funding_requirements(self) -> dict[str, int]:
        """Native amount each gas address must hold before the remote step runs."""
        if self.native_funding_by_address:
            return dict(self.native_funding_by_address)
        if self.native_funding_address and self.native_funding_required > 0:
            return {self.native_funding_address: self.native_funding_required}
        return {}

    def requirement(self, purpose: ApprovalPurpose) -> Optional[ApprovalRequirement]:
        for approval in self.approvals:
            if approval.purpose == purpose:
                return approval
        return None

    def spender_requirements(self, purposes: Optional[Iterable[ApprovalPurpose]] = None) -> dict[Account, int]:
        """
        Buffered amount each spender must be allowed.

        An ICRC-2 allowance is a single number per spender, so purposes that
        share a spender must be covered by one combined allowance.
        """
        wanted = set(purposes) if purposes is not None else None
        base: dict[Account, int] = {}
        for approval in self.approvals:
            if wanted is not None and approval.purpose not in wanted:
                continue
            base[approval.spender] = base.get(approval.spender, 0) + approval.base_cost
        return {spender: buffered_amount(cost) for spender, cost in base.items()}


@dataclass
class AllowanceStatus:
    spender: Account
    amount: int
    required_amount: int
    expires_at: Optional[int] = None
    is_expired: bool = False

    @property
    def is_sufficient(self) -> bool:
        return self.amount >= self.required_amount and not self.is_expired


@dataclass
class FundingCheck:
    """Live balances and allowances measured against a CostBreakdown."""
    required_fee: int
    fee_balance: int
    sufficient_fee: bool
    native_required: int = 0
    native_balance: Optional[int] = None
    sufficient_native: bool = True
    allowances: dict[ApprovalPurpose, AllowanceStatus] = field(default_factory=dict)

    @property
    def sufficient_allowance(self) -> bool:
        return all(status.is_sufficient for status in self.allowances.values())

    @property
    def ready(self) -> bool:
        return self.sufficient_fee and self.sufficient_native and self.sufficient_allowance

    def raise_for_shortfall(self) -> None:
        """
        Raises:
            InsufficientBalanceError: fee ledger or native balance too low
            InsufficientAllowanceError: an approval is missing, short or expired
        """
        if not self.sufficient_fee:
            raise InsufficientBalanceError(
                "Fee ledger balance does not cover the buffered cost",
                required=self.required_fee,
                available=self.fee_balance,
                chain="ic",
            )
        if not self.sufficient_native:
            raise InsufficientBalanceError(
                "Native balance does not cover remote gas and rent",
                required=self.native_required,
                available=self.native_balance or 0,
            )
        for purpose, status in self.allowances.items():
            if not status.is_sufficient:
                reason = "expired" if status.is_expired else "too small"
                raise InsufficientAllowanceError(
                    f"{purpose.value} approval {reason}",
                    spender=status.spender.owner,
                    required=status.required_amount,
                    available=status.amount,
                )


def _now_ns() -> int:
    return time.time_ns()


class CostAndFundingReconciler(LoggerMixin):
    """Prices a bridge operation and checks it against live funds."""

    def __init__(
        self,
        orchestrator: OrchestratorClient,
        oracle: RemoteMintOracle,
        chains: ChainRegistry,
        margin_percent: Optional[int] = None,
        approval_ttl_seconds: Optional[int] = None,
    ):
        self.orchestrator = orchestrator
        self.oracle = oracle
        self.chains = chains
        self.margin_percent = margin_percent or settings.native_safety_margin_percent
        self.approval_ttl_seconds = approval_ttl_seconds or settings.approval_ttl_seconds

    @property
    def orchestrator_account(self) -> Account:
        return Account(self.orchestrator.canister_id)

    # ===================
    # Estimation
    # ===================

    async def estimate(
        self,
        assets: list[Asset],
        target: BridgeTarget,
        account: Optional[Account] = None,
    ) -> CostBreakdown:
        """
        Price moving ``assets`` to ``target``.

        Targeting the IC prices an import (mirror canister creation plus mint
        per asset); any other target prices an export (remote collection
        deployment plus cast per asset, plus native funding on the target).

        Raises:
            AdapterError: a cost query failed
        """
        if not assets:
            return CostBreakdown()
        if target.chain.family == ChainFamily.IC:
            if account is None:
                raise ValueError("Import estimates need the receiving account")
            breakdown = await self._estimate_import(assets, target, account)
        else:
            breakdown = await self._estimate_export(assets, target)

        self._log_estimate("import" if target.chain.family == ChainFamily.IC else "export", len(assets), breakdown)
        return breakdown

    async def estimate_burn(self, assets: list[Asset], mirror_canister: str, payer: str) -> CostBreakdown:
        """
        Price burning remote casts back into their ckNFTs.

        ``assets`` sit in a remote collection; ``payer`` is the wallet that
        sends them to the burn address and must hold the gas for it.
        """
        if not assets:
            return CostBreakdown()
        source = assets[0]
        mirror = self.oracle.mirror_client(mirror_canister)
        adapter = self.chains.get(source.chain)

        async def native() -> int:
            return with_margin(await adapter.estimate_native_funding(len(assets), False), self.margin_percent)

        native_required, *costs = await asyncio.gather(
            native(),
            *(self._query(mirror.cast_cost(a.token_id, a.contract, a.chain)) for a in assets),
        )

        breakdown = CostBreakdown(
            per_asset_cost={a.token_id: c for a, c in zip(assets, costs)},
            native_funding_required=native_required,
            native_symbol=adapter.native_symbol,
            native_chain=source.chain,
            native_funding_address=payer,
            # The remint is the orchestrator's mint, paid through its allowance
            approvals=[ApprovalRequirement(ApprovalPurpose.ASSET, self.orchestrator_account, sum(costs))],
        )
        self._log_estimate("burn", len(assets), breakdown)
        return breakdown

    async def estimate_return(
        self,
        assets: list[Asset],
        native_contract: str,
        native_chain: ChainRef,
        burn_addresses: dict[str, str],
    ) -> CostBreakdown:
        """
        Price returning ckNFTs to the collection they were imported from.

        ``burn_addresses`` maps token id to the gas address paying its
        release; each address is funded for the tokens it releases.
        """
        if not assets:
            return CostBreakdown()
        mirror_canister = assets[0].contract
        mirror = self.oracle.mirror_client(mirror_canister)
        adapter = self.chains.get(native_chain)

        per_address: dict[str, int] = {}
        for asset in assets:
            address = burn_addresses[asset.token_id]
            per_address[address] = per_address.get(address, 0) + 1

        async def native(count: int) -> int:
            return with_margin(await adapter.estimate_native_funding(count, False), self.margin_percent)

        funding = await asyncio.gather(*(native(n) for n in per_address.values()))
        costs = await asyncio.gather(
            *(self._query(mirror.cast_cost(a.token_id, native_contract, native_chain)) for a in assets)
        )

        breakdown = CostBreakdown(
            per_asset_cost={a.token_id: c for a, c in zip(assets, costs)},
            native_funding_required=sum(funding),
            native_symbol=adapter.native_symbol,
            native_chain=native_chain,
            native_funding_by_address=dict(zip(per_address, funding)),
            approvals=[ApprovalRequirement(ApprovalPurpose.ASSET, Account(mirror_canister), sum(costs))],
        )
        self._log_estimate("return", len(assets), breakdown)
        return breakdown

    def _log_estimate(self, kind: str, count: int, breakdown: CostBreakdown) -> None:
        self.log.info(
            "Costs estimated",
            kind=kind,
            native_chain=breakdown.native_chain.key if breakdown.native_chain else None,
            assets=count,
            deployment_cost=breakdown.deployment_cost,
            total=breakdown.total,
            required_fee=breakdown.required_fee,
            native_required=breakdown.native_funding_required,
        )

    async def _estimate_import(self, assets: list[Asset], target: BridgeTarget, account: Account) -> CostBreakdown:
        source = assets[0]
        mirror = target.mirror_canister or await self.oracle.resolve_mirror_canister(source.contract, source.chain)

        async def deployment() -> Optional[int]:
            if mirror is not None:
                return None
            return await self._query(self.orchestrator.get_creation_cost(source.contract, source.chain))

        async def mint_cost(asset: Asset) -> int:
            cost = await self._query(
                self.orchestrator.get_mint_cost(asset.contract, asset.chain, asset.token_id, account)
            )
            if cost is None:
                raise AdapterError(f"No mint cost for token {asset.token_id}", "ic")
            return cost

        deployment_cost, *costs = await asyncio.gather(deployment(), *(mint_cost(a) for a in assets))

        breakdown = CostBreakdown(
            per_asset_cost={a.token_id: c for a, c in zip(assets, costs)},
            deployment_cost=deployment_cost,
            native_symbol=self._native_symbol(source.chain),
        )
        if deployment_cost is not None:
            breakdown.approvals.append(
                ApprovalRequirement(ApprovalPurpose.DEPLOYMENT, self.orchestrator_account, deployment_cost)
            )
        breakdown.approvals.append(
            ApprovalRequirement(ApprovalPurpose.ASSET, self.orchestrator_account, sum(costs))
        )
        return breakdown

    async def _estimate_export(self, assets: list[Asset], target: BridgeTarget) -> CostBreakdown:
        if target.mirror_canister is None:
            raise ValueError("Export estimates need the mirror canister")
        source = assets[0]
        mirror = self.oracle.mirror_client(target.mirror_canister)
        remote_contract = target.remote_contract or source.contract
        deploy = not target.collection_exists

        async def deployment() -> Optional[int]:
            if not deploy:
                return None
            return await self._query(self.orchestrator.get_remote_cost(source.contract, source.chain, target.chain))

        async def cast_cost(asset: Asset) -> int:
            return await self._query(mirror.cast_cost(asset.token_id, remote_contract, target.chain))

        async def native() -> int:
            adapter = self.chains.get(target.chain)
            raw = await adapter.estimate_native_funding(len(assets), deploy)
            return with_margin(raw, self.margin_percent)

        deployment_cost, native_required, *costs = await asyncio.gather(
            deployment(), native(), *(cast_cost(a) for a in assets)
        )

        breakdown = CostBreakdown(
            per_asset_cost={a.token_id: c for a, c in zip(assets, costs)},
            deployment_cost=deployment_cost,
            native_funding_required=native_required,
            native_symbol=self._native_symbol(target.chain),
            native_chain=target.chain,
            native_funding_address=target.funding_address,
        )
        if deployment_cost is not None:
            breakdown.approvals.append(
                ApprovalRequirement(ApprovalPurpose.DEPLOYMENT, self.orchestrator_account, deployment_cost)
            )
        breakdown.approvals.append(
            ApprovalRequirement(ApprovalPurpose.ASSET, Account(target.mirror_canister), sum(costs))
        )
        return breakdown

    async def _query(self, awaitable):
        try:
            return await awaitable
        except BridgeError:
            raise
        except Exception as e:
            raise AdapterError(f"Cost query failed: {e}", "ic")

    def _native_symbol(self, chain: ChainRef) -> str:
        if chain in self.chains:
            return self.chains.get(chain).native_symbol
        return ""

    # ===================
    # Reconciliation
    # ===================

    def reconcile(
        self,
        breakdown: CostBreakdown,
        live_balance: int,
        live_allowances: Optional[dict[Account, LedgerAllowance]] = None,
        native_balance: Optional[int] = None,
        now: Optional[int] = None,
    ) -> FundingCheck:
        """
        Compare a breakdown against live values.

        ``now`` is nanoseconds since epoch, the ledger's clock unit. When
        ``native_balance`` is None the native side is not checked.
        """
        now = now if now is not None else _now_ns()
        live_allowances = live_allowances or {}
        required_fee = breakdown.required_fee

        per_spender = breakdown.spender_requirements()
        allowances: dict[ApprovalPurpose, AllowanceStatus] = {}
        for approval in breakdown.approvals:
            live = live_allowances.get(approval.spender, LedgerAllowance(amount=0))
            allowances[approval.purpose] = AllowanceStatus(
                spender=approval.spender,
                amount=live.amount,
                required_amount=per_spender[approval.spender],
                expires_at=live.expires_at,
                is_expired=live.expires_at is not None and live.expires_at < now,
            )

        sufficient_native = True
        if native_balance is not None:
            sufficient_native = native_balance >= breakdown.native_funding_required

        return FundingCheck(
            required_fee=required_fee,
            fee_balance=live_balance,
            sufficient_fee=live_balance >= required_fee,
            native_required=breakdown.native_funding_required,
            native_balance=native_balance,
            sufficient_native=sufficient_native,
            allowances=allowances,
        )

    async def check(
        self,
        breakdown: CostBreakdown,
        ledger: FeeLedgerClient,
        account: Account,
        native_check: bool = True,
        now: Optional[int] = None,
    ) -> FundingCheck:
        """Fetch live balance, allowances and native funding, then reconcile."""
        spenders = list(breakdown.spender_requirements())

        async def native_balance() -> Optional[int]:
            if not native_check or breakdown.native_chain is None or not breakdown.native_funding_address:
                return None
            return await self.chains.get(breakdown.native_chain).get_native_balance(breakdown.native_funding_address)

        balance, native, *allowances = await asyncio.gather(
            ledger.balance_of(account),
            native_balance(),
            *(ledger.allowance(account, spender) for spender in spenders),
        )
        check = self.reconcile(
            breakdown,
            live_balance=balance,
            live_allowances=dict(zip(spenders, allowances)),
            native_balance=native,
            now=now,
        )
        self.log.info(
            "Funding checked",
            ready=check.ready,
            sufficient_fee=check.sufficient_fee,
            sufficient_native=check.sufficient_native,
            sufficient_allowance=check.sufficient_allowance,
        )
        return check

    async def ensure_approvals(
        self,
        ledger: FeeLedgerClient,
        breakdown: CostBreakdown,
        check: Optional[FundingCheck] = None,
        purposes: Optional[Iterable[ApprovalPurpose]] = None,
        now: Optional[int] = None,
    ) -> dict[Account, int]:
        """
        Approve every spender whose allowance is insufficient.

        Each spender is approved on its own with an expiry of now plus the
        approval TTL; one approval never stands in for another.

        Returns:
            Ledger block index per spender approved
        """
        now = now if now is not None else _now_ns()
        expires_at = now + self.approval_ttl_seconds * 1_000_000_000

        satisfied = set()
        if check is not None:
            satisfied = {s.spender for s in check.allowances.values() if s.is_sufficient}

        approved: dict[Account, int] = {}
        for spender, amount in breakdown.spender_requirements(purposes).items():
            if spender in satisfied:
                continue
            approved[spender] = await ledger.approve(spender, amount, expires_at)
            self.log.info("Approval requested", spender=spender.owner, amount=amount)
        return approved
