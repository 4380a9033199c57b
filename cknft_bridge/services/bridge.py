"""
Bridge session: one user, one set of collaborators, fresh workflows per run.

The session owns the caches shared by discovery and cost estimation, so a
mirror resolved while discovering is not asked for again while pricing.
Every ``plan_*`` call returns a new BridgeWorkflow; nothing is reused from a
previous run.

Four directions are planned here:

    import  source-chain asset -> locked at the bridge -> ckNFT minted
    export  ckNFT -> cast to a collection deployed on a remote chain
    burn    remote cast -> sent to its burn address -> ckNFT reminted
    return  ckNFT -> cast back to the collection it was imported from
"""

import asyncio
from dataclasses import replace
from typing import Iterable, Optional, Sequence, Union

from cknft_bridge.chains import ChainRegistry
from cknft_bridge.chains.base import ChainQueryAdapter
from cknft_bridge.errors import (
    AdapterError,
    InsufficientBalanceError,
    OwnershipMismatchError,
    RemoteError,
    WorkflowError,
)
from cknft_bridge.ic.base import (
    Account,
    CastRequest,
    FeeLedgerClient,
    MirrorCanisterClient,
    OrchestratorClient,
    WalletSigner,
)
from cknft_bridge.models import (
    Asset,
    BridgeTarget,
    ChainFamily,
    ChainRef,
    DiscoveredAsset,
    DiscoveryResult,
    MintPhase,
    MintStatus,
)
from cknft_bridge.services.cache import SessionCache
from cknft_bridge.services.cast_poller import CastStatusPoller, Sleep, poll_until
from cknft_bridge.services.costs import ApprovalPurpose, CostAndFundingReconciler, CostBreakdown
from cknft_bridge.services.discovery import BridgeAddressBook, DiscoveryEngine, ScanWindows
from cknft_bridge.services.mirror_oracle import MirrorFactory, RemoteMintOracle
from cknft_bridge.services.workflow import (
    BURN_TEMPLATE,
    EXPORT_TEMPLATE,
    IMPORT_TEMPLATE,
    RETURN_TEMPLATE,
    BridgeWorkflow,
    StepAction,
    StepContext,
)
from cknft_bridge.utils.logging import LoggerMixin

AssetLike = Union[Asset, DiscoveredAsset]


def _assets(items: Iterable[AssetLike], returning: bool = False) -> list[Asset]:
    """
    Plain assets of one collection.

    Discovered assets must be selectable for the direction: when
    ``returning`` they stand for their ckNFT, otherwise for themselves.
    """
    assets = []
    for item in items:
        if isinstance(item, DiscoveredAsset):
            if returning:
                item = item.mirror_asset()
            elif not item.selectable_for_import:
                raise ValueError(f"Token {item.asset.token_id} is {item.state.value}")
            else:
                item = item.asset
        assets.append(item)
    if not assets:
        raise ValueError("No assets selected")
    first = assets[0]
    for asset in assets[1:]:
        if asset.chain != first.chain or not first.chain.same_address(asset.contract, first.contract):
            raise ValueError("All assets must come from the same collection")
    return assets


class BridgeSession(LoggerMixin):
    """Entry point for discovery, pricing and bridge workflows."""

    def __init__(
        self,
        chains: ChainRegistry,
        orchestrator: OrchestratorClient,
        ledger: FeeLedgerClient,
        mirror_factory: MirrorFactory,
        account: Account,
        poller: Optional[CastStatusPoller] = None,
        sleep: Sleep = asyncio.sleep,
        poll_interval: Optional[float] = None,
        per_token_addresses: bool = False,
    ):
        self.chains = chains
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.account = account

        self.cache = SessionCache("bridge-session")
        self.oracle = RemoteMintOracle(orchestrator, mirror_factory, self.cache)
        self.address_book = BridgeAddressBook(orchestrator, account, self.cache, per_token=per_token_addresses)
        self.reconciler = CostAndFundingReconciler(orchestrator, self.oracle, chains)
        self.poller = poller or CastStatusPoller(interval=poll_interval, sleep=sleep)
        self._sleep = sleep
        self._poll_interval = poll_interval

    # ===================
    # Discovery
    # ===================

    def discovery_engine(self, chain: ChainRef, windows: Optional[ScanWindows] = None) -> DiscoveryEngine:
        return DiscoveryEngine(self.chains.get(chain), self.oracle, self.address_book, windows=windows)

    async def discover(
        self,
        chain: ChainRef,
        owner: str,
        collection: str,
        known_token_ids: Iterable[str] = (),
    ) -> DiscoveryResult:
        return await self.discovery_engine(chain).discover(owner, collection, known_token_ids)

    async def resolve_manual(self, chain: ChainRef, owner: str, collection: str, token_id: str) -> DiscoveredAsset:
        return await self.discovery_engine(chain).resolve_manual(owner, collection, token_id)

    def cache_stats(self) -> dict:
        stats = self.cache.cache_stats()
        stats["identity_lookups"] = self.oracle.identity_lookups
        stats["ownership_lookups"] = self.oracle.ownership_lookups
        stats["bridge_address_lookups"] = self.address_book.lookups
        return stats

    def reset_caches(self) -> int:
        """Forget everything learned this session."""
        return self.cache.flush()

    # ===================
    # Shared step helpers
    # ===================

    async def _approve(self, ctx: StepContext, purpose: ApprovalPurpose) -> dict:
        breakdown: CostBreakdown = ctx.context["breakdown"]
        if breakdown.requirement(purpose) is None:
            ctx.skip(f"No {purpose.value} cost")
            return {}

        # Re-read live allowances; an earlier step may have drawn on them
        check = await self.reconciler.check(breakdown, self.ledger, self.account, native_check=False)
        blocks = await self.reconciler.ensure_approvals(self.ledger, breakdown, check, purposes=[purpose])
        if not blocks:
            ctx.skip("Existing approval covers the cost")
            return {}
        ctx.report(f"Approved {len(blocks)} spender(s)")
        return {spender.owner: block for spender, block in blocks.items()}

    async def _check_balances(self, ctx: StepContext, native_check: bool = False) -> None:
        breakdown: CostBreakdown = ctx.context["breakdown"]
        check = await self.reconciler.check(breakdown, self.ledger, self.account, native_check=native_check)
        ctx.context["funding"] = check
        if not (check.sufficient_fee and check.sufficient_native):
            check.raise_for_shortfall()
        ctx.report(f"Fee balance {check.fee_balance} covers {check.required_fee}")

    def _poll(self, fetch, is_done, what: str, on_progress=None):
        return poll_until(
            fetch,
            is_done,
            interval=self._poll_interval,
            sleep=self._sleep,
            on_progress=on_progress,
            what=what,
        )

    # ===================
    # Custody on a source or remote chain (import, burn)
    # ===================

    def _connect_wallet(self, wallet: WalletSigner, chain: ChainRef, mint_to: Account) -> StepAction:
        async def connect(ctx: StepContext):
            if not wallet.address:
                raise WorkflowError("Wallet is not connected")
            ctx.context["wallet"] = wallet.address
            ctx.report(f"Connected {wallet.address} on {chain.key}")
            return {"wallet": wallet.address, "account": mint_to.owner}
        return connect

    def _verify_holdings(
        self,
        adapter: ChainQueryAdapter,
        contract: str,
        assets: list[Asset],
        wallet: WalletSigner,
    ) -> StepAction:
        """Each asset is with the wallet (to send) or already at the bridge (to mint)."""
        chain = adapter.chain

        async def verify_ownership(ctx: StepContext):
            to_lock, locked = [], []
            for asset in assets:
                if await self.oracle.is_mirrored(contract, chain, asset.token_id):
                    raise OwnershipMismatchError(f"Token {asset.token_id} is already migrated", chain.key)
                holder = await adapter.owner_of(contract, asset.token_id)
                if adapter.same_address(holder, wallet.address):
                    to_lock.append(asset.token_id)
                elif await self.address_book.is_bridge_address(contract, chain, asset.token_id, holder):
                    locked.append(asset.token_id)
                else:
                    raise OwnershipMismatchError(
                        f"Token {asset.token_id} is held by {holder}, not {wallet.address}", chain.key
                    )
            ctx.context["to_lock"] = to_lock
            ctx.context["already_locked"] = locked
            return {"to_lock": to_lock, "already_locked": locked}
        return verify_ownership

    def _approval_addresses(self, contract: str, chain: ChainRef, mint_to: Account) -> StepAction:
        async def approval_addresses(ctx: StepContext):
            addresses = {}
            for token_id in ctx.context["to_lock"]:
                address = await self.orchestrator.get_remote_approval_address(contract, chain, token_id, mint_to)
                if not address:
                    raise AdapterError(f"No approval address for token {token_id}", "ic")
                addresses[token_id] = address
            ctx.context["approval_addresses"] = addresses
            return addresses
        return approval_addresses

    def _send_to_bridge(
        self,
        adapter: ChainQueryAdapter,
        contract: str,
        wallet: WalletSigner,
        what: str,
    ) -> StepAction:
        async def lock(ctx: StepContext):
            to_lock = ctx.context["to_lock"]
            if not to_lock:
                ctx.skip("All assets are already at the bridge")
                return None

            sent = ctx.context.setdefault("lock_txs", {})
            addresses = ctx.context["approval_addresses"]
            for token_id in to_lock:
                if token_id in sent:
                    continue
                payload = await adapter.build_lock_transaction(contract, token_id, wallet.address, addresses[token_id])
                sent[token_id] = await wallet.send_transaction(payload)
                ctx.mark_submitted(sent[token_id])

            async def holders():
                return [await adapter.owner_of(contract, token_id) for token_id in to_lock]

            def arrived(current: list) -> bool:
                return all(adapter.same_address(h, addresses[t]) for t, h in zip(to_lock, current))

            await self._poll(holders, arrived, what)
            return dict(sent)
        return lock

    def _mint(self, contract: str, chain: ChainRef, assets: list[Asset], mint_to: Account) -> StepAction:
        async def mint(ctx: StepContext):
            requests = ctx.context.setdefault("mint_requests", {})
            for asset in assets:
                if asset.token_id in requests:
                    continue
                requests[asset.token_id] = await self.orchestrator.mint(
                    contract, chain, asset.token_id, mint_to, spender=self.account
                )
                ctx.mark_submitted(str(requests[asset.token_id]))

            request_ids = [requests[a.token_id] for a in assets]

            def progress(statuses: list[Optional[MintStatus]]) -> None:
                phases = sorted({s.phase.value for s in statuses if s is not None})
                ctx.report(", ".join(phases) or "Waiting for orchestrator")

            statuses = await self._poll(
                lambda: self.orchestrator.get_mint_status(request_ids),
                lambda current: all(s is not None and s.phase.is_terminal for s in current),
                "mint completion",
                on_progress=progress,
            )
            failed = [s for s in statuses if s.phase == MintPhase.ERROR]
            if failed:
                detail = "; ".join(f"request {s.request_id}: {s.detail}" for s in failed)
                raise RemoteError(f"Mint failed: {detail}", result=statuses, chain="ic", code="mint_error")
            return statuses
        return mint

    def _verify_mirrors(self, contract: str, chain: ChainRef, assets: list[Asset], mint_to: Account) -> StepAction:
        async def verify_mirrors(ctx: StepContext):
            for asset in assets:
                self.oracle.invalidate(contract, chain, asset.token_id)
                owner = await self.oracle.is_mirrored(contract, chain, asset.token_id)
                if owner != mint_to.owner:
                    raise OwnershipMismatchError(
                        f"Mirror of token {asset.token_id} is owned by {owner}, expected {mint_to.owner}", "ic"
                    )
            ctx.report(f"{len(assets)} mirror(s) minted to {mint_to.owner}")
            return [a.token_id for a in assets]
        return verify_mirrors

    # ===================
    # Delivery from the IC (export, return)
    # ===================

    def _verify_mirror_owner(self, mirror: MirrorCanisterClient, assets: list[Asset]) -> StepAction:
        async def verify_ownership(ctx: StepContext):
            owners = await mirror.owner_of([a.token_id for a in assets])
            for asset, owner in zip(assets, owners):
                if owner != self.account.owner:
                    raise OwnershipMismatchError(
                        f"ckNFT {asset.token_id} is owned by {owner}, not {self.account.owner}", "ic"
                    )
            return len(assets)
        return verify_ownership

    def _fund(self, funding_wallet: Optional[WalletSigner]) -> StepAction:
        """
        Top up every gas address of the breakdown to its requirement.

        Only the shortfall is sent, once per address. Without a wallet a
        shortfall fails the step before anything is sent.
        """
        async def fund(ctx: StepContext):
            breakdown: CostBreakdown = ctx.context["breakdown"]
            required = breakdown.funding_requirements()
            if not required:
                ctx.skip("No native funding needed")
                return None
            adapter = self.chains.get(breakdown.native_chain)
            symbol = breakdown.native_symbol

            sent = ctx.context.setdefault("funding_txs", {})
            for address, amount in required.items():
                if address in sent:
                    continue
                balance = await adapter.get_native_balance(address)
                shortfall = amount - balance
                if shortfall <= 0:
                    continue
                if funding_wallet is None:
                    raise InsufficientBalanceError(
                        f"Gas address {address} needs {shortfall} more {symbol}",
                        required=amount,
                        available=balance,
                        chain=adapter.chain.key,
                    )
                payload = await adapter.build_native_transfer(funding_wallet.address, address, shortfall)
                sent[address] = await funding_wallet.send_transaction(payload)
                ctx.mark_submitted(sent[address])

            if not sent:
                ctx.skip(f"Gas addresses hold enough {symbol}")
                return None

            async def balances():
                return {address: await adapter.get_native_balance(address) for address in required}

            await self._poll(
                balances,
                lambda current: all(current[a] >= amount for a, amount in required.items()),
                "gas account funding",
            )
            return dict(sent)
        return fund

    def _cast(self, mirror: MirrorCanisterClient, assets: list[Asset], target_owner: str) -> StepAction:
        async def cast(ctx: StepContext):
            if "cast_ids" not in ctx.context:
                target: BridgeTarget = ctx.context["target"]
                requests = [
                    CastRequest(
                        token_id=asset.token_id,
                        remote_contract=ctx.context["remote_contract"],
                        target_chain=target.chain,
                        target_owner=target_owner,
                    )
                    for asset in assets
                ]
                submissions = await mirror.cast(requests, spender=self.account)
                accepted = [s.cast_id for s in submissions if s.accepted]
                rejected = [s.error for s in submissions if not s.accepted]
                if accepted:
                    ctx.context["cast_ids"] = accepted
                    ctx.mark_submitted()
                if rejected:
                    raise RemoteError(f"Cast rejected: {'; '.join(rejected)}", result=submissions, chain="ic")
                ctx.report(f"Cast ids {', '.join(str(c) for c in accepted)}")

            return await self.poller.poll_until_terminal(ctx.context["cast_ids"], mirror, on_progress=ctx.report)
        return cast

    def _verify_delivery(self, assets: list[Asset], target_owner: str) -> StepAction:
        async def verify_delivery(ctx: StepContext):
            target: BridgeTarget = ctx.context["target"]
            if target.chain.family != ChainFamily.EVM:
                ctx.skip("Remote ownership is confirmed by the orchestrator")
                return None
            adapter = self.chains.get(target.chain)
            contract = ctx.context["remote_contract"]
            for asset in assets:
                holder = await adapter.owner_of(contract, asset.token_id)
                if not adapter.same_address(holder, target_owner):
                    raise OwnershipMismatchError(
                        f"Token {asset.token_id} is held by {holder}, expected {target_owner}", target.chain.key
                    )
            return contract
        return verify_delivery

    # ===================
    # Import: source chain -> IC
    # ===================

    def plan_import(
        self,
        items: Sequence[AssetLike],
        wallet: WalletSigner,
        mint_to: Optional[Account] = None,
    ) -> BridgeWorkflow:
        """
        Build the workflow that locks source-chain assets at the bridge and
        mints their ckNFT mirrors to ``mint_to`` (the session account by default).
        """
        assets = _assets(items)
        source = assets[0]
        if source.chain.family == ChainFamily.IC:
            raise ValueError("Import needs assets from an EVM or Solana chain")
        adapter = self.chains.get(source.chain)
        mint_to = mint_to or self.account
        contract, chain = source.contract, source.chain

        async def check_canister(ctx: StepContext):
            mirror = await self.oracle.resolve_mirror_canister(contract, chain)
            ctx.context["mirror_canister"] = mirror
            ctx.report(f"Mirror canister {mirror}" if mirror else "No mirror canister yet")
            return mirror

        async def estimate(ctx: StepContext):
            target = BridgeTarget(chain=ChainRef.ic(), mirror_canister=ctx.context["mirror_canister"])
            breakdown = await self.reconciler.estimate(assets, target, account=mint_to)
            ctx.context["breakdown"] = breakdown
            return breakdown

        async def create_canister(ctx: StepContext):
            if ctx.context["mirror_canister"] and not ctx.resuming:
                ctx.skip("Mirror canister already exists")
                return None
            if not ctx.resuming:
                created = await self.orchestrator.create_mirror_canister(contract, chain, spender=self.account)
                ctx.mark_submitted()
                ctx.report(f"Created mirror canister {created}")

            # Registration is visible to queries only once the orchestrator records it
            async def registered():
                self.oracle.invalidate(contract, chain)
                return await self.oracle.resolve_mirror_canister(contract, chain)

            mirror = await self._poll(registered, lambda m: m is not None, "mirror canister registration")
            ctx.context["mirror_canister"] = mirror
            return mirror

        lock = self._send_to_bridge(adapter, contract, wallet, "bridge transfer")
        mint = self._mint(contract, chain, assets, mint_to)

        actions = {
            "connect": self._connect_wallet(wallet, chain, mint_to),
            "verify-ownership": self._verify_holdings(adapter, contract, assets, wallet),
            "check-cknft-canister": check_canister,
            "estimate-costs": estimate,
            "check-balances": self._check_balances,
            "approve-cycles-orchestrator": lambda ctx: self._approve(ctx, ApprovalPurpose.DEPLOYMENT),
            "create-cknft-canister": create_canister,
            "approve-cycles-mint": lambda ctx: self._approve(ctx, ApprovalPurpose.ASSET),
            "get-approval-address": self._approval_addresses(contract, chain, mint_to),
            "transfer-nft-to-bridge": lock,
            "initiate-mint": mint,
            "verify-mint-complete": self._verify_mirrors(contract, chain, assets, mint_to),
        }
        confirms = {
            "create-cknft-canister": create_canister,
            "transfer-nft-to-bridge": lock,
            "initiate-mint": mint,
        }
        workflow = IMPORT_TEMPLATE.build(actions, confirms)
        self.log.info(
            "Import planned",
            workflow_id=workflow.workflow_id,
            chain=chain.key,
            contract=contract,
            assets=len(assets),
        )
        return workflow

    # ===================
    # Export: IC mirror -> EVM / Solana
    # ===================

    def plan_export(
        self,
        items: Sequence[AssetLike],
        target: BridgeTarget,
        target_owner: str,
        funding_wallet: Optional[WalletSigner] = None,
    ) -> BridgeWorkflow:
        """
        Build the workflow that casts ckNFT mirrors to ``target``.

        ``funding_wallet`` tops up the orchestrator's funding address on the
        target chain when it cannot cover gas or rent; without it a shortfall
        fails the funding step. Funding comes before the remote deployment,
        which it pays for.
        """
        assets = _assets(items)
        source = assets[0]
        if source.chain.family != ChainFamily.IC:
            raise ValueError("Export needs ckNFT assets on the IC")
        if target.chain.family == ChainFamily.IC:
            raise ValueError("Export target must be an EVM or Solana chain")
        target = target if target.mirror_canister else replace(target, mirror_canister=source.contract)
        adapter = self.chains.get(target.chain)
        mirror = self.oracle.mirror_client(target.mirror_canister)

        async def connect(ctx: StepContext):
            if not target_owner:
                raise WorkflowError("No receiving address on the target chain")
            ctx.context["target"] = target
            ctx.report(f"Casting to {target_owner} on {target.chain.key}")
            return {"account": self.account.owner, "target_owner": target_owner}

        async def check_remote_contract(ctx: StepContext):
            if target.collection_exists:
                if not target.remote_contract:
                    raise WorkflowError("Remote collection exists but its address is unknown")
                ctx.context["remote_contract"] = target.remote_contract
                ctx.report(f"Remote collection {target.remote_contract}")
            else:
                ctx.report("Remote collection will be deployed")
            return target.remote_contract

        async def funding_address(ctx: StepContext):
            address = await self.orchestrator.get_funding_address(target.mirror_canister, target.chain)
            if not address:
                raise AdapterError(f"No funding address on {target.chain.key}", "ic")
            ctx.context["target"] = replace(ctx.context["target"], funding_address=address)
            return address

        async def estimate(ctx: StepContext):
            breakdown = await self.reconciler.estimate(assets, ctx.context["target"])
            ctx.context["breakdown"] = breakdown
            return breakdown

        async def deploy(ctx: StepContext):
            if target.collection_exists:
                ctx.skip("Remote collection already deployed")
                return None
            if "remote_contract_id" not in ctx.context:
                gas_price, gas_limit, priority_fee = await adapter.deployment_gas_params()
                contract_id = await self.orchestrator.create_remote(
                    source.contract, source.chain, target.chain,
                    gas_price, gas_limit, priority_fee,
                    spender=self.account,
                )
                ctx.context["remote_contract_id"] = contract_id
                ctx.mark_submitted()
                ctx.report(f"Deployment {contract_id} submitted")

            contract_id = ctx.context["remote_contract_id"]

            async def status():
                return (await self.orchestrator.get_remote_status([contract_id]))[0]

            state = await self._poll(
                status,
                lambda s: s is not None and s.confirmed and bool(s.address),
                "remote collection deployment",
            )
            ctx.context["remote_contract"] = state.address
            if state.deployment_tx:
                ctx.mark_submitted(state.deployment_tx)
            return state

        fund = self._fund(funding_wallet)
        cast = self._cast(mirror, assets, target_owner)

        actions = {
            "connect": connect,
            "verify-ownership": self._verify_mirror_owner(mirror, assets),
            "check-remote-contract": check_remote_contract,
            "get-funding-address": funding_address,
            "estimate-costs": estimate,
            "check-balances": self._check_balances,
            "fund-gas-account": fund,
            "approve-cycles-remote": lambda ctx: self._approve(ctx, ApprovalPurpose.DEPLOYMENT),
            "deploy-remote-contract": deploy,
            "approve-cycles-cast": lambda ctx: self._approve(ctx, ApprovalPurpose.ASSET),
            "initiate-cast": cast,
            "verify-remote-ownership": self._verify_delivery(assets, target_owner),
        }
        confirms = {
            "fund-gas-account": fund,
            "deploy-remote-contract": deploy,
            "initiate-cast": cast,
        }
        workflow = EXPORT_TEMPLATE.build(actions, confirms)
        self.log.info(
            "Export planned",
            workflow_id=workflow.workflow_id,
            target=target.chain.key,
            mirror_canister=target.mirror_canister,
            assets=len(assets),
        )
        return workflow

    # ===================
    # Burn: remote cast -> IC
    # ===================

    def plan_burn(
        self,
        items: Sequence[AssetLike],
        wallet: WalletSigner,
        mint_to: Optional[Account] = None,
    ) -> BridgeWorkflow:
        """
        Build the workflow that sends remote casts to their burn address and
        remints the ckNFTs to ``mint_to`` (the session account by default).

        ``items`` live in a collection deployed by an earlier export, so its
        mirror canister must already exist. ``wallet`` pays the gas of the
        transfers and is checked for it before anything is sent.
        """
        assets = _assets(items)
        source = assets[0]
        if source.chain.family == ChainFamily.IC:
            raise ValueError("Burn needs remote casts on an EVM or Solana chain")
        adapter = self.chains.get(source.chain)
        mint_to = mint_to or self.account
        contract, chain = source.contract, source.chain

        async def check_canister(ctx: StepContext):
            mirror = await self.oracle.resolve_mirror_canister(contract, chain)
            if mirror is None:
                raise WorkflowError(
                    f"No ckNFT canister for {contract} on {chain.key}; the collection was never bridged"
                )
            ctx.context["mirror_canister"] = mirror
            ctx.report(f"Mirror canister {mirror}")
            return mirror

        async def estimate(ctx: StepContext):
            breakdown = await self.reconciler.estimate_burn(assets, ctx.context["mirror_canister"], wallet.address)
            ctx.context["breakdown"] = breakdown
            return breakdown

        lock = self._send_to_bridge(adapter, contract, wallet, "burn transfer")
        remint = self._mint(contract, chain, assets, mint_to)

        actions = {
            "connect": self._connect_wallet(wallet, chain, mint_to),
            "verify-ownership": self._verify_holdings(adapter, contract, assets, wallet),
            "check-cknft-canister": check_canister,
            "estimate-costs": estimate,
            "check-balances": lambda ctx: self._check_balances(ctx, native_check=True),
            "approve-cycles-burn": lambda ctx: self._approve(ctx, ApprovalPurpose.ASSET),
            "get-burn-address": self._approval_addresses(contract, chain, mint_to),
            "transfer-to-burn": lock,
            "remint-cknft": remint,
            "verify-remint-complete": self._verify_mirrors(contract, chain, assets, mint_to),
        }
        confirms = {
            "transfer-to-burn": lock,
            "remint-cknft": remint,
        }
        workflow = BURN_TEMPLATE.build(actions, confirms)
        self.log.info(
            "Burn planned",
            workflow_id=workflow.workflow_id,
            chain=chain.key,
            contract=contract,
            assets=len(assets),
        )
        return workflow

    # ===================
    # Return: IC mirror -> native chain
    # ===================

    def plan_return(
        self,
        items: Sequence[AssetLike],
        target_owner: str,
        funding_wallet: Optional[WalletSigner] = None,
        native_contract: Optional[str] = None,
    ) -> BridgeWorkflow:
        """
        Build the workflow that casts ckNFTs back to the collection they were
        imported from, releasing the originals to ``target_owner``.

        ``items`` are ckNFTs, or discovered source assets that are already
        migrated. Each token's release is paid from its own burn address on
        the native chain; ``funding_wallet`` tops those up. When
        ``native_contract`` is given it must match the canister's native
        collection.
        """
        assets = _assets(items, returning=True)
        source = assets[0]
        if source.chain.family != ChainFamily.IC:
            raise ValueError("Return needs ckNFT assets on the IC")
        mirror = self.oracle.mirror_client(source.contract)

        async def connect(ctx: StepContext):
            if not target_owner:
                raise WorkflowError("No receiving address on the native chain")
            ctx.report(f"Returning to {target_owner}")
            return {"account": self.account.owner, "target_owner": target_owner}

        async def check_native_chain(ctx: StepContext):
            contract, chain = await mirror.native_chain()
            if chain.family == ChainFamily.IC:
                raise WorkflowError(f"{mirror.canister_id} is native to the IC; there is nothing to return to")
            if native_contract and not chain.same_address(native_contract, contract):
                raise WorkflowError(f"Assets can only return to {contract} on {chain.key}, not {native_contract}")
            if chain not in self.chains:
                raise WorkflowError(f"No adapter for {chain.key}")
            ctx.context["target"] = BridgeTarget(
                chain=chain,
                mirror_canister=mirror.canister_id,
                remote_contract=contract,
                collection_exists=True,
            )
            ctx.context["remote_contract"] = contract
            ctx.report(f"Native collection {contract} on {chain.key}")
            return {"contract": contract, "chain": chain.key}

        async def burn_addresses(ctx: StepContext):
            addresses = {}
            for asset in assets:
                address = await mirror.burn_funding_address(asset.token_id)
                if not address:
                    raise AdapterError(f"No burn address for token {asset.token_id}", "ic")
                addresses[asset.token_id] = address
            ctx.context["burn_addresses"] = addresses
            return addresses

        async def estimate(ctx: StepContext):
            target: BridgeTarget = ctx.context["target"]
            breakdown = await self.reconciler.estimate_return(
                assets, target.remote_contract, target.chain, ctx.context["burn_addresses"]
            )
            ctx.context["breakdown"] = breakdown
            return breakdown

        async def approve_transfer(ctx: StepContext):
            spender = self.reconciler.orchestrator_account
            errors = await mirror.approve_tokens([a.token_id for a in assets], spender)
            rejected = [f"{a.token_id}: {e}" for a, e in zip(assets, errors) if e is not None]
            if rejected:
                raise RemoteError(
                    f"Token approval rejected: {'; '.join(rejected)}", result=errors, chain="ic", code="approve_tokens"
                )
            ctx.report(f"{len(assets)} ckNFT(s) approved for {spender.owner}")
            return len(assets)

        fund = self._fund(funding_wallet)
        cast = self._cast(mirror, assets, target_owner)

        actions = {
            "connect": connect,
            "verify-ownership": self._verify_mirror_owner(mirror, assets),
            "check-native-chain": check_native_chain,
            "get-burn-addresses": burn_addresses,
            "estimate-costs": estimate,
            "check-balances": self._check_balances,
            "fund-burn-address": fund,
            "approve-cycles-cast": lambda ctx: self._approve(ctx, ApprovalPurpose.ASSET),
            "approve-cknft-transfer": approve_transfer,
            "initiate-cast": cast,
            "wait-native-confirmation": self._verify_delivery(assets, target_owner),
        }
        confirms = {
            "fund-burn-address": fund,
            "initiate-cast": cast,
        }
        workflow = RETURN_TEMPLATE.build(actions, confirms)
        self.log.info(
            "Return planned",
            workflow_id=workflow.workflow_id,
            mirror_canister=mirror.canister_id,
            assets=len(assets),
        )
        return workflow
