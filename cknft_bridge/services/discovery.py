"""
Asset discovery: which assets of a collection does an owner hold, have in
flight, or have already bridged?

Stages run concurrently and every RPC is bounded by ``call_timeout``, so one
slow or failing stage never hides the results of another:

    direct      enumerable ownership index, else transfer logs over the
                primary window (received minus sent), each candidate
                re-checked against the live holder
    departures  outgoing transfers over the deep window; the latest one per
                token is what recovery works from
    classify    per asset, concurrently: mirror check first (sticky), then
                current holder, then bridge-address match

Adapter and oracle failures are caught per asset and yield UNKNOWN.
"""

import asyncio
from dataclasses import dataclass
from typing import Iterable, Optional

from cknft_bridge.chains.base import ChainQueryAdapter
from cknft_bridge.config import settings
from cknft_bridge.errors import AdapterError, BridgeError, EnumerationUnsupportedError
from cknft_bridge.ic.base import Account, OrchestratorClient
from cknft_bridge.models import (
    Asset,
    ChainFamily,
    ChainRef,
    DiscoveredAsset,
    DiscoveryResult,
    OwnershipState,
    TransferEvent,
)
from cknft_bridge.services.cache import MISSING, SessionCache
from cknft_bridge.services.coalesce import RequestCoalescer
from cknft_bridge.services.mirror_oracle import RemoteMintOracle
from cknft_bridge.utils.logging import LoggerMixin

# The approval address does not depend on the token for EVM collections
PROBE_TOKEN_ID = "0"


@dataclass(frozen=True)
class ScanWindows:
    """Lookback windows in blocks or slots. None scans from genesis."""
    primary: Optional[int]
    deep: Optional[int]

    @classmethod
    def for_chain(cls, chain: ChainRef) -> "ScanWindows":
        if chain.family == ChainFamily.EVM:
            return cls(
                primary=settings.evm_primary_scan_blocks,
                deep=settings.evm_deep_scan_blocks,
            )
        # Solana history is bounded by the signature page size instead
        return cls(primary=None, deep=None)

    @staticmethod
    def start(latest: int, window: Optional[int]) -> int:
        if window is None:
            return 0
        return max(0, latest - window + 1)


class BridgeAddressBook(LoggerMixin):
    """
    Bridge approval addresses per source collection.

    Cached for the session under ("bridge-addresses", contract, chain_key[,
    token_id]) and single-flight per key. ``lookups`` counts calls that
    reached the orchestrator.
    """

    def __init__(
        self,
        orchestrator: OrchestratorClient,
        account: Account,
        cache: Optional[SessionCache] = None,
        per_token: bool = False,
    ):
        self.orchestrator = orchestrator
        self.account = account
        self.cache = cache if cache is not None else SessionCache("bridge-addresses")
        self.per_token = per_token
        self._coalescer = RequestCoalescer()
        self.lookups = 0

    def _key(self, contract: str, chain: ChainRef, token_id: str) -> tuple:
        key = ("bridge-addresses", chain.normalize(contract), chain.key)
        return key + (token_id,) if self.per_token else key

    async def addresses(self, contract: str, chain: ChainRef, token_id: str = PROBE_TOKEN_ID) -> frozenset[str]:
        """
        Normalized approval addresses for a collection (or token).

        Raises:
            AdapterError: the orchestrator could not be reached; nothing is cached
        """
        key = self._key(contract, chain, token_id)
        cached = self.cache.get(key)
        if cached is not MISSING:
            return cached
        return await self._coalescer.run(
            key,
            lambda: self._fetch(key, contract, chain, token_id if self.per_token else PROBE_TOKEN_ID),
            lambda: self.cache.get(key),
        )

    async def _fetch(self, key: tuple, contract: str, chain: ChainRef, token_id: str) -> frozenset[str]:
        self.lookups += 1
        try:
            address = await self.orchestrator.get_remote_approval_address(
                contract, chain, token_id, self.account
            )
        except BridgeError:
            raise
        except Exception as e:
            raise AdapterError(f"Approval address lookup failed: {e}", "ic")

        found = frozenset([chain.normalize(address)] if address else [])
        self.cache.set(key, found)
        self.log.debug("Bridge addresses resolved", contract=contract, chain=chain.key, count=len(found))
        return found

    async def is_bridge_address(self, contract: str, chain: ChainRef, token_id: str, address: Optional[str]) -> bool:
        if address is None:
            return False
        return chain.normalize(address) in await self.addresses(contract, chain, token_id)


def latest_per_token(events: Iterable[TransferEvent]) -> dict[str, TransferEvent]:
    latest: dict[str, TransferEvent] = {}
    for event in events:
        current = latest.get(event.token_id)
        if current is None or event.height >= current.height:
            latest[event.token_id] = event
    return latest


class DiscoveryEngine(LoggerMixin):
    """Classifies every candidate asset of one owner in one collection."""

    def __init__(
        self,
        adapter: ChainQueryAdapter,
        oracle: RemoteMintOracle,
        address_book: BridgeAddressBook,
        windows: Optional[ScanWindows] = None,
        concurrency: Optional[int] = None,
        call_timeout: Optional[float] = None,
    ):
        self.adapter = adapter
        self.oracle = oracle
        self.address_book = address_book
        self.windows = windows or ScanWindows.for_chain(adapter.chain)
        self.concurrency = concurrency or settings.discovery_concurrency
        self.call_timeout = call_timeout or settings.rpc_timeout_seconds

    @property
    def chain(self) -> ChainRef:
        return self.adapter.chain

    async def discover(
        self,
        owner: str,
        collection: str,
        known_token_ids: Iterable[str] = (),
    ) -> DiscoveryResult:
        """
        Classify the owner's assets in ``collection``.

        ``known_token_ids`` adds tokens the caller already knows about (a
        previous session, manual entry) to the candidate set.
        """
        result = DiscoveryResult()
        self.log.info("Discovery started", chain=self.chain.key, collection=collection, owner=owner)

        latest: Optional[int] = None
        try:
            latest = await self._timed(self.adapter.get_latest_height(), "get_latest_height")
        except AdapterError as e:
            result.stage_errors["height"] = str(e)

        held, departures = await asyncio.gather(
            self._direct_stage(owner, collection, latest, result),
            self._departure_stage(owner, collection, latest, result),
        )

        candidates: list[str] = []
        for token_id in list(held) + list(departures) + [str(t) for t in known_token_ids]:
            if token_id not in candidates:
                candidates.append(token_id)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def classify(token_id: str) -> DiscoveredAsset:
            async with semaphore:
                return await self._classify_guarded(
                    owner, collection, token_id,
                    enumerated=held.get(token_id, False),
                    departure=departures.get(token_id),
                )

        result.assets = list(await asyncio.gather(*(classify(t) for t in candidates)))

        self.log.info(
            "Discovery finished",
            chain=self.chain.key,
            collection=collection,
            assets=len(result.assets),
            counts={state.value: n for state, n in result.counts().items() if n},
            stage_errors=list(result.stage_errors),
        )
        return result

    async def resolve_manual(self, owner: str, collection: str, token_id: str) -> DiscoveredAsset:
        """
        Classify a token the user named explicitly.

        Without transfer history a non-owner holder is still offered as
        IN_BRIDGE: the user is asserting the asset was on its way to the bridge.
        """
        item = await self._classify_guarded(owner, collection, str(token_id), enumerated=False, departure=None)
        if item.state == OwnershipState.OWNED:
            item.error = "Asset is still held by the owner"
        elif item.state == OwnershipState.UNKNOWN and item.current_holder is not None and item.error is None:
            item.state = OwnershipState.IN_BRIDGE
        return item

    # ===================
    # Stages
    # ===================

    async def _timed(self, awaitable, what: str):
        """Bound one RPC by ``call_timeout``; a slow call fails its stage only."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            raise AdapterError(f"{what} timed out after {self.call_timeout}s", self.chain.key)

    async def _direct_stage(
        self,
        owner: str,
        collection: str,
        latest: Optional[int],
        result: DiscoveryResult,
    ) -> dict[str, bool]:
        """Token id -> whether the holding came from the enumerable index."""
        try:
            token_ids = await self._timed(self.adapter.list_owned(owner, collection), "list_owned")
            return {str(t): True for t in token_ids}
        except EnumerationUnsupportedError:
            self.log.debug("Enumeration unsupported, falling back to transfer logs", collection=collection)
        except AdapterError as e:
            result.stage_errors["direct"] = str(e)

        if latest is None:
            return {}
        try:
            return {t: False for t in await self._event_owned(owner, collection, latest)}
        except AdapterError as e:
            result.stage_errors["events"] = str(e)
            return {}

    async def _event_owned(self, owner: str, collection: str, latest: int) -> list[str]:
        start = self.windows.start(latest, self.windows.primary)
        received = await self._timed(
            self.adapter.get_transfers(collection, start, latest, recipient=owner), "get_transfers"
        )
        sent = await self._timed(
            self.adapter.get_transfers(collection, start, latest, sender=owner), "get_transfers"
        )

        # A token counts as held when its last inbound transfer is newer than its last outbound one
        last_in = latest_per_token(received)
        last_out = latest_per_token(e for e in sent if not self.chain.same_address(e.recipient, owner))
        return [
            token_id for token_id, event in last_in.items()
            if token_id not in last_out or last_out[token_id].height < event.height
        ]

    async def _departure_stage(
        self,
        owner: str,
        collection: str,
        latest: Optional[int],
        result: DiscoveryResult,
    ) -> dict[str, TransferEvent]:
        if latest is None:
            return {}
        start = self.windows.start(latest, self.windows.deep)
        try:
            sent = await self._timed(
                self.adapter.get_transfers(collection, start, latest, sender=owner), "get_transfers"
            )
        except AdapterError as e:
            result.stage_errors["departures"] = str(e)
            return {}
        return latest_per_token(
            e for e in sent if not self.chain.same_address(e.recipient, owner)
        )

    # ===================
    # Classification
    # ===================

    async def _classify_guarded(
        self,
        owner: str,
        collection: str,
        token_id: str,
        enumerated: bool,
        departure: Optional[TransferEvent],
    ) -> DiscoveredAsset:
        asset = Asset(chain=self.chain, contract=collection, token_id=token_id, owner=owner)
        try:
            return await asyncio.wait_for(
                self._classify(asset, enumerated, departure),
                timeout=self.call_timeout,
            )
        except asyncio.TimeoutError:
            error = "Lookup timed out"
        except BridgeError as e:
            error = str(e)
        self.log.warning("Asset classification failed", token_id=token_id, error=error)
        return DiscoveredAsset(
            asset=asset,
            state=OwnershipState.UNKNOWN,
            transfer_tx=departure.tx_hash if departure else None,
            error=error,
        )

    async def _classify(
        self,
        asset: Asset,
        enumerated: bool,
        departure: Optional[TransferEvent],
    ) -> DiscoveredAsset:
        transfer_tx = departure.tx_hash if departure else None

        # Sticky: a confirmed mirror overrides everything and ends the lookups
        mirror_owner = await self.oracle.is_mirrored(asset.contract, asset.chain, asset.token_id)
        if mirror_owner is not None:
            return DiscoveredAsset(
                asset=asset,
                state=OwnershipState.ALREADY_MIGRATED,
                transfer_tx=transfer_tx,
                mirror_owner=mirror_owner,
                # Already cached by is_mirrored
                mirror_canister=await self.oracle.resolve_mirror_canister(asset.contract, asset.chain),
            )

        if enumerated:
            return DiscoveredAsset(asset=asset, state=OwnershipState.OWNED, current_holder=asset.owner)

        holder = await self.adapter.owner_of(asset.contract, asset.token_id)
        if self.chain.same_address(holder, asset.owner):
            return DiscoveredAsset(asset=asset, state=OwnershipState.OWNED, current_holder=holder)
        if holder is None:
            return DiscoveredAsset(
                asset=asset,
                state=OwnershipState.UNKNOWN,
                transfer_tx=transfer_tx,
                error="Asset has no current holder",
            )

        try:
            at_bridge = await self.address_book.is_bridge_address(
                asset.contract, asset.chain, asset.token_id, holder
            )
            lookup_error = None
        except BridgeError as e:
            # Not conclusive either way
            at_bridge = False
            lookup_error = str(e)

        if at_bridge:
            state = OwnershipState.READY_TO_FINALIZE
        elif departure is not None:
            state = OwnershipState.IN_BRIDGE
        else:
            state = OwnershipState.UNKNOWN

        return DiscoveredAsset(
            asset=asset,
            state=state,
            current_holder=holder,
            transfer_tx=transfer_tx,
            error=lookup_error,
        )
