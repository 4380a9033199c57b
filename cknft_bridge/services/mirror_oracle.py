"""
Remote mint oracle: does a source asset already have a mirror on the IC?

Two lookups, both memoized in a SessionCache and single-flight per key:
the mirror canister for a (contract, chain) pair, then the mirror's owner of
the token. Negative answers are cached as NO_MIRROR / NOT_MINTED so a
session never asks the same question twice. Failed lookups are not cached.
"""

from typing import Callable, Optional

from cknft_bridge.errors import AdapterError, BridgeError
from cknft_bridge.ic.base import MirrorCanisterClient, OrchestratorClient
from cknft_bridge.models import ChainRef
from cknft_bridge.services.cache import MISSING, SessionCache
from cknft_bridge.services.coalesce import RequestCoalescer
from cknft_bridge.utils.logging import LoggerMixin

NO_MIRROR = "none"
NOT_MINTED = "not-minted"

MirrorFactory = Callable[[str], MirrorCanisterClient]


class RemoteMintOracle(LoggerMixin):
    """Memoized mirror-existence checks, safe to call concurrently."""

    def __init__(
        self,
        orchestrator: OrchestratorClient,
        mirror_factory: MirrorFactory,
        cache: Optional[SessionCache] = None,
    ):
        self.orchestrator = orchestrator
        self._mirror_factory = mirror_factory
        self.cache = cache if cache is not None else SessionCache("mirror-oracle")
        self._coalescer = RequestCoalescer()
        self._mirrors: dict[str, MirrorCanisterClient] = {}

        # Calls that actually reached a canister
        self.identity_lookups = 0
        self.ownership_lookups = 0

    @staticmethod
    def _canister_key(contract: str, chain: ChainRef) -> tuple:
        return ("canister", chain.normalize(contract), chain.key)

    @staticmethod
    def _token_key(contract: str, chain: ChainRef, token_id: str) -> tuple:
        return ("token", chain.normalize(contract), chain.key, str(token_id))

    def mirror_client(self, canister_id: str) -> MirrorCanisterClient:
        if canister_id not in self._mirrors:
            self._mirrors[canister_id] = self._mirror_factory(canister_id)
        return self._mirrors[canister_id]

    # ===================
    # Mirror canister identity
    # ===================

    async def resolve_mirror_canister(self, contract: str, chain: ChainRef) -> Optional[str]:
        """
        Mirror canister for a source collection, None if none exists.

        Raises:
            AdapterError: the orchestrator could not be reached
        """
        key = self._canister_key(contract, chain)
        cached = self.cache.get(key)
        if cached is MISSING:
            cached = await self._coalescer.run(
                key,
                lambda: self._fetch_canister(key, contract, chain),
                lambda: self.cache.get(key),
            )
        return None if cached == NO_MIRROR else cached

    async def _fetch_canister(self, key: tuple, contract: str, chain: ChainRef) -> str:
        self.identity_lookups += 1
        try:
            canister = await self.orchestrator.get_mirror_canister(contract, chain)
        except BridgeError:
            raise
        except Exception as e:
            raise AdapterError(f"Mirror canister lookup failed: {e}", "ic")

        value = canister or NO_MIRROR
        self.cache.set(key, value)
        self.log.debug("Resolved mirror canister", contract=contract, chain=chain.key, canister=value)
        return value

    # ===================
    # Token ownership
    # ===================

    async def is_mirrored(self, contract: str, chain: ChainRef, token_id: str) -> Optional[str]:
        """
        Owner of the mirrored asset, or None when no mirror exists.

        Raises:
            AdapterError: a canister could not be reached
        """
        key = self._token_key(contract, chain, token_id)
        cached = self.cache.get(key)
        if cached is MISSING:
            canister = await self.resolve_mirror_canister(contract, chain)
            if canister is None:
                # No canister means nothing minted; no per-token entry needed
                return None
            cached = await self._coalescer.run(
                key,
                lambda: self._fetch_owner(key, canister, token_id),
                lambda: self.cache.get(key),
            )
        return None if cached == NOT_MINTED else cached

    async def _fetch_owner(self, key: tuple, canister: str, token_id: str) -> str:
        self.ownership_lookups += 1
        try:
            owners = await self.mirror_client(canister).owner_of([str(token_id)])
        except BridgeError:
            raise
        except Exception as e:
            raise AdapterError(f"Mirror ownership lookup failed: {e}", "ic")

        owner = owners[0] if owners else None
        value = owner or NOT_MINTED
        self.cache.set(key, value)
        return value

    # ===================
    # Refresh
    # ===================

    def invalidate(
        self,
        contract: Optional[str] = None,
        chain: Optional[ChainRef] = None,
        token_id: Optional[str] = None,
    ) -> int:
        """
        Drop cached answers. With no arguments everything goes; otherwise the
        collection's canister entry and its token entries (or just one token).
        """
        if contract is None or chain is None:
            return self.cache.flush()
        if token_id is not None:
            return self.cache.invalidate(*self._token_key(contract, chain, token_id))
        removed = self.cache.invalidate(*self._canister_key(contract, chain))
        removed += self.cache.invalidate("token", chain.normalize(contract), chain.key)
        return removed
