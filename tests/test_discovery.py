"""
Tests for asset discovery and ownership classification.
"""

import asyncio

import pytest

from cknft_bridge.errors import AdapterError
from cknft_bridge.models import OwnershipState
from cknft_bridge.services.cache import SessionCache
from cknft_bridge.services.discovery import BridgeAddressBook, DiscoveryEngine, ScanWindows, latest_per_token
from cknft_bridge.services.mirror_oracle import RemoteMintOracle

from conftest import BRIDGE, COLLECTION, EVM, IC, MIRROR_ID, OWNER, PRINCIPAL, STRANGER


def make_engine(adapter, orchestrator, account, per_token=True, **kwargs):
    cache = SessionCache("test")
    oracle = RemoteMintOracle(orchestrator, orchestrator.mirror_factory, cache)
    book = BridgeAddressBook(orchestrator, account, cache, per_token=per_token)
    return DiscoveryEngine(adapter, oracle, book, **kwargs), oracle, book


def three_asset_world(adapter, orchestrator):
    """One held, one sitting at the bridge, one at the bridge and already mirrored."""
    adapter.owners["1"] = OWNER
    adapter.transfer("2", OWNER, BRIDGE, 9_000)
    adapter.transfer("3", OWNER, BRIDGE, 8_000)
    mirror = orchestrator.register_mirror(COLLECTION, EVM)
    mirror.owners["3"] = PRINCIPAL


class TestDiscoveryScenario:
    """The owner/bridge/mirrored scenario."""

    async def test_classifies_each_asset(self, adapter, orchestrator, account):
        """Held, at-bridge and mirrored assets get one state each."""
        three_asset_world(adapter, orchestrator)
        engine, _, _ = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION)

        assert result.find("1").state == OwnershipState.OWNED
        assert result.find("2").state == OwnershipState.READY_TO_FINALIZE
        assert result.find("2").current_holder == BRIDGE
        assert result.find("3").state == OwnershipState.ALREADY_MIGRATED
        assert result.find("3").mirror_owner == PRINCIPAL
        counts = result.counts()
        assert counts[OwnershipState.OWNED] == 1
        assert counts[OwnershipState.READY_TO_FINALIZE] == 1
        assert counts[OwnershipState.ALREADY_MIGRATED] == 1
        assert not result.is_partial

    async def test_migrated_asset_skips_bridge_lookup(self, adapter, orchestrator, account):
        """A mirrored asset never reaches the holder or bridge-address checks."""
        three_asset_world(adapter, orchestrator)
        engine, _, _ = make_engine(adapter, orchestrator, account)

        await engine.discover(OWNER, COLLECTION)

        assert orchestrator.approval_address_tokens == ["2"]
        # Token 1 came from the index, token 3 was short-circuited
        assert adapter.calls["owner_of"] == 1

    async def test_second_pass_hits_cache(self, adapter, orchestrator, account):
        """Repeating discovery makes no new canister lookups."""
        three_asset_world(adapter, orchestrator)
        engine, oracle, book = make_engine(adapter, orchestrator, account)

        await engine.discover(OWNER, COLLECTION)
        assert oracle.identity_lookups == 1
        assert oracle.ownership_lookups == 3
        assert book.lookups == 1

        result = await engine.discover(OWNER, COLLECTION)
        assert result.find("2").state == OwnershipState.READY_TO_FINALIZE
        assert oracle.identity_lookups == 1
        assert oracle.ownership_lookups == 3
        assert book.lookups == 1
        assert orchestrator.calls["get_mirror_canister"] == 1

    async def test_selectability(self, adapter, orchestrator, account):
        """Mirrored assets can only be returned; the rest can be imported."""
        three_asset_world(adapter, orchestrator)
        engine, _, _ = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION)

        assert result.find("1").selectable_for_import
        assert result.find("2").selectable_for_import
        assert not result.find("3").selectable_for_import
        assert result.find("3").selectable_for_return
        assert not result.find("1").selectable_for_return

        mirrored = result.find("3").mirror_asset()
        assert (mirrored.chain, mirrored.contract, mirrored.token_id, mirrored.owner) == (IC, MIRROR_ID, "3", PRINCIPAL)
        with pytest.raises(ValueError):
            result.find("1").mirror_asset()


class TestDiscoveryStates:
    """Classification edge cases."""

    async def test_departure_to_unknown_holder_is_in_bridge(self, adapter, orchestrator, account):
        """A token sent away to a non-bridge address is still in flight."""
        adapter.transfer("4", OWNER, STRANGER, 9_500)
        engine, _, _ = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION)

        item = result.find("4")
        assert item.state == OwnershipState.IN_BRIDGE
        assert item.current_holder == STRANGER
        assert item.transfer_tx == "0xtx4-9500"

    async def test_no_history_is_unknown(self, adapter, orchestrator, account):
        """A known token held elsewhere without any transfer record stays unknown."""
        adapter.owners["8"] = STRANGER
        engine, _, _ = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION, known_token_ids=["8"])

        item = result.find("8")
        assert item.state == OwnershipState.UNKNOWN
        assert item.current_holder == STRANGER
        assert item.error is None

    async def test_burned_token_is_unknown(self, adapter, orchestrator, account):
        """No current holder at all."""
        engine, _, _ = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION, known_token_ids=["9"])

        assert result.find("9").state == OwnershipState.UNKNOWN
        assert result.find("9").error == "Asset has no current holder"

    async def test_event_fallback_without_enumeration(self, adapter, orchestrator, account):
        """Non-enumerable contracts are scanned through transfer logs."""
        adapter.enumerable = False
        adapter.transfer("5", STRANGER, OWNER, 9_500)
        adapter.transfer("6", STRANGER, OWNER, 9_000)
        adapter.transfer("6", OWNER, BRIDGE, 9_100)
        engine, _, _ = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION)

        assert result.find("5").state == OwnershipState.OWNED
        assert result.find("6").state == OwnershipState.READY_TO_FINALIZE
        assert "direct" not in result.stage_errors

    async def test_self_transfer_is_not_a_departure(self, adapter, orchestrator, account):
        """Sending a token to yourself does not put it in flight."""
        adapter.transfer("7", OWNER, OWNER, 9_000)
        adapter.enumerable = False
        engine, _, _ = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION)

        assert result.find("7").state == OwnershipState.OWNED


class TestDiscoveryFailures:
    """Failures downgrade results instead of aborting the scan."""

    async def test_direct_stage_failure_is_partial(self, adapter, orchestrator, account):
        """An index failure is recorded and the log scan takes over."""
        adapter.transfer("1", STRANGER, OWNER, 9_000)
        adapter.fail["list_owned"] = AdapterError("rpc down", "evm:1")
        engine, _, _ = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION)

        assert result.is_partial
        assert "rpc down" in result.stage_errors["direct"]
        assert result.find("1").state == OwnershipState.OWNED

    async def test_height_failure_keeps_direct_stage(self, adapter, orchestrator, account):
        """Without a height only the enumerable index can be used."""
        adapter.owners["1"] = OWNER
        adapter.fail["get_latest_height"] = AdapterError("timeout", "evm:1")
        engine, _, _ = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION)

        assert "height" in result.stage_errors
        assert result.find("1").state == OwnershipState.OWNED
        assert adapter.calls["get_transfers"] == 0

    async def test_oracle_failure_yields_unknown(self, adapter, orchestrator, account):
        """A mirror cannot be ruled out, so the asset is unknown."""
        adapter.owners["1"] = OWNER
        orchestrator.fail["get_mirror_canister"] = AdapterError("canister trapped", "ic")
        engine, _, _ = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION)

        item = result.find("1")
        assert item.state == OwnershipState.UNKNOWN
        assert "canister trapped" in item.error

    async def test_bridge_lookup_failure_not_cached(self, adapter, orchestrator, account):
        """A failed address lookup leaves a departed token in flight and caches nothing."""
        adapter.transfer("2", OWNER, BRIDGE, 9_000)
        orchestrator.fail["get_remote_approval_address"] = AdapterError("unreachable", "ic")
        engine, _, book = make_engine(adapter, orchestrator, account)

        result = await engine.discover(OWNER, COLLECTION)

        item = result.find("2")
        assert item.state == OwnershipState.IN_BRIDGE
        assert "unreachable" in item.error
        assert book.cache.cache_stats("bridge-addresses")["entries"] == 0

        del orchestrator.fail["get_remote_approval_address"]
        result = await engine.discover(OWNER, COLLECTION)
        assert result.find("2").state == OwnershipState.READY_TO_FINALIZE

    async def test_slow_lookup_times_out_alone(self, adapter, orchestrator, account):
        """One hanging RPC does not hold back the other assets."""
        adapter.owners["1"] = OWNER
        adapter.transfer("2", OWNER, BRIDGE, 9_000)
        adapter.delays["owner_of"] = 1.0
        engine, _, _ = make_engine(adapter, orchestrator, account, call_timeout=0.05)

        result = await engine.discover(OWNER, COLLECTION)

        assert result.find("1").state == OwnershipState.OWNED
        assert result.find("2").state == OwnershipState.UNKNOWN
        assert result.find("2").error == "Lookup timed out"

    async def test_slow_index_does_not_hold_back_departures(self, adapter, orchestrator, account):
        """A hanging ownership index is recorded and the other stages still report."""
        adapter.transfer("1", STRANGER, OWNER, 9_500)
        adapter.transfer("2", OWNER, BRIDGE, 9_000)
        adapter.delays["list_owned"] = 5.0
        engine, _, _ = make_engine(adapter, orchestrator, account, call_timeout=0.1)

        result = await asyncio.wait_for(engine.discover(OWNER, COLLECTION), timeout=2.0)

        assert "timed out" in result.stage_errors["direct"]
        assert result.find("1").state == OwnershipState.OWNED
        assert result.find("2").state == OwnershipState.READY_TO_FINALIZE

    async def test_slow_log_scan_is_a_stage_error(self, adapter, orchestrator, account):
        adapter.owners["1"] = OWNER
        adapter.delays["get_transfers"] = 5.0
        engine, _, _ = make_engine(adapter, orchestrator, account, call_timeout=0.1)

        result = await asyncio.wait_for(engine.discover(OWNER, COLLECTION), timeout=2.0)

        assert "timed out" in result.stage_errors["departures"]
        assert result.find("1").state == OwnershipState.OWNED


class TestManualResolution:
    """Tokens named by the user."""

    async def test_held_elsewhere_is_in_bridge(self, adapter, orchestrator, account):
        """Without history, a foreign holder is taken as the bridge leg."""
        adapter.owners["8"] = STRANGER
        engine, _, _ = make_engine(adapter, orchestrator, account)

        item = await engine.resolve_manual(OWNER, COLLECTION, "8")

        assert item.state == OwnershipState.IN_BRIDGE

    async def test_at_bridge_is_ready(self, adapter, orchestrator, account):
        adapter.owners["2"] = BRIDGE
        engine, _, _ = make_engine(adapter, orchestrator, account)

        item = await engine.resolve_manual(OWNER, COLLECTION, "2")

        assert item.state == OwnershipState.READY_TO_FINALIZE

    async def test_still_owned_is_flagged(self, adapter, orchestrator, account):
        """Nothing to recover when the owner still holds the token."""
        adapter.owners["1"] = OWNER
        engine, _, _ = make_engine(adapter, orchestrator, account)

        item = await engine.resolve_manual(OWNER, COLLECTION, "1")

        assert item.state == OwnershipState.OWNED
        assert item.error == "Asset is still held by the owner"


class TestScanHelpers:

    def test_window_start_clamps_at_genesis(self):
        assert ScanWindows.start(100, 5_000) == 0
        assert ScanWindows.start(10_000, 5_000) == 5_001
        assert ScanWindows.start(10_000, None) == 0

    def test_solana_scans_without_block_window(self):
        from cknft_bridge.models import ChainRef

        windows = ScanWindows.for_chain(ChainRef.solana())
        assert windows.primary is None
        assert windows.deep is None

    @pytest.mark.parametrize("heights, expected", [
        ([5, 9, 7], 9),
        ([3], 3),
    ])
    def test_latest_per_token(self, adapter, heights, expected):
        for height in heights:
            adapter.transfer("1", OWNER, STRANGER, height)
        latest = latest_per_token(adapter.transfers)
        assert latest["1"].height == expected
