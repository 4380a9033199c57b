"""
Tests for the staged bridge workflow.
"""

import asyncio

import pytest

from cknft_bridge.errors import AdapterError, RemoteError, RemoteTimeoutError, StepTransitionError, WorkflowError
from cknft_bridge.services.workflow import (
    BURN_TEMPLATE,
    EXPORT_TEMPLATE,
    IMPORT_TEMPLATE,
    RETURN_TEMPLATE,
    BridgeStep,
    BridgeWorkflow,
    StageStatus,
    StepDefinition,
    StepStatus,
    WorkflowStatus,
    stage_status,
)


def ok(log, name):
    async def action(ctx):
        log.append(name)
        return name
    return action


def flaky(log, name, failures=1, error=None):
    """Fails ``failures`` times, then succeeds."""
    state = {"left": failures}

    async def action(ctx):
        log.append(name)
        if state["left"]:
            state["left"] -= 1
            raise error or AdapterError("rpc timeout", "evm:1")
        return name
    return action


def steps(*specs):
    return [StepDefinition(id=i, title=i.title(), stage=stage, action=a, **kw) for i, stage, a, kw in specs]


class TestOrdering:
    """Steps run in declared order and stages follow their steps."""

    async def test_runs_in_order(self):
        log = []
        workflow = BridgeWorkflow(steps(
            ("a", "one", ok(log, "a"), {}),
            ("b", "one", ok(log, "b"), {}),
            ("c", "two", ok(log, "c"), {}),
        ), stage_titles={"one": "Stage One"})

        snapshot = await workflow.start()

        assert log == ["a", "b", "c"]
        assert snapshot.status == WorkflowStatus.COMPLETED
        assert [s.status for s in snapshot.stages] == [StageStatus.COMPLETED, StageStatus.COMPLETED]
        assert snapshot.stage("one").title == "Stage One"
        assert snapshot.stage("two").title == "two"
        assert snapshot.step("b").output == "b"
        assert snapshot.current_step is None

    async def test_failure_halts_progress(self):
        log = []
        workflow = BridgeWorkflow(steps(
            ("a", "one", ok(log, "a"), {}),
            ("b", "one", flaky(log, "b"), {}),
            ("c", "two", ok(log, "c"), {}),
        ))

        snapshot = await workflow.start()

        assert log == ["a", "b"]
        assert snapshot.status == WorkflowStatus.HALTED
        assert snapshot.failed_step == "b"
        assert snapshot.current_step == "b"
        assert "rpc timeout" in snapshot.step("b").error
        assert snapshot.step("c").status == StepStatus.PENDING
        assert snapshot.stage("one").status == StageStatus.FAILED
        assert snapshot.stage("two").status == StageStatus.PENDING

    async def test_skipped_counts_as_done(self):
        async def nothing_to_do(ctx):
            ctx.skip("Already exists")

        workflow = BridgeWorkflow(steps(
            ("a", "one", nothing_to_do, {}),
            ("b", "one", ok([], "b"), {}),
        ))

        snapshot = await workflow.start()

        assert snapshot.step("a").status == StepStatus.SKIPPED
        assert snapshot.step("a").message == "Already exists"
        assert snapshot.stage("one").status == StageStatus.COMPLETED

    async def test_context_shared_between_steps(self):
        async def produce(ctx):
            ctx.context["value"] = 41

        async def consume(ctx):
            return ctx.context["value"] + 1

        workflow = BridgeWorkflow(steps(("a", "s", produce, {}), ("b", "s", consume, {})))

        snapshot = await workflow.start()

        assert snapshot.step("b").output == 42

    def test_rejects_bad_definitions(self):
        action = ok([], "x")
        with pytest.raises(ValueError):
            BridgeWorkflow([])
        with pytest.raises(ValueError, match="unique"):
            BridgeWorkflow(steps(("a", "s", action, {}), ("a", "s", action, {})))
        with pytest.raises(ValueError, match="contiguous"):
            BridgeWorkflow(steps(("a", "s", action, {}), ("b", "t", action, {}), ("c", "s", action, {})))


class TestRetry:
    """Explicit retry of a failed step."""

    async def test_retry_continues(self):
        log = []
        workflow = BridgeWorkflow(steps(
            ("a", "s", flaky(log, "a"), {}),
            ("b", "s", ok(log, "b"), {}),
        ))
        await workflow.start()

        snapshot = await workflow.retry_step("a")

        assert log == ["a", "a", "b"]
        assert snapshot.status == WorkflowStatus.COMPLETED
        assert workflow.get_step("a").attempts == 2
        assert snapshot.step("a").error is None

    async def test_non_retryable_step_stays_failed(self):
        workflow = BridgeWorkflow(steps(("a", "s", flaky([], "a"), {"retryable": False})))
        await workflow.start()

        with pytest.raises(StepTransitionError):
            await workflow.retry_step("a")
        assert workflow.snapshot().step("a").status == StepStatus.FAILED

    async def test_retry_requires_failed_step(self):
        workflow = BridgeWorkflow(steps(
            ("a", "s", flaky([], "a"), {}),
            ("b", "s", ok([], "b"), {}),
        ))

        with pytest.raises(WorkflowError):
            await workflow.retry_step("a")

        await workflow.start()
        with pytest.raises(StepTransitionError, match="has not failed"):
            await workflow.retry_step("b")
        with pytest.raises(WorkflowError, match="Unknown step"):
            await workflow.retry_step("zzz")

    async def test_start_only_once(self):
        workflow = BridgeWorkflow(steps(("a", "s", ok([], "a"), {})))
        await workflow.start()
        with pytest.raises(WorkflowError):
            await workflow.start()

    def test_failed_cannot_jump_to_completed(self):
        step = BridgeStep(definition=steps(("a", "s", ok([], "a"), {}))[0])
        step.transition(StepStatus.LOADING)
        step.transition(StepStatus.FAILED)

        with pytest.raises(StepTransitionError):
            step.transition(StepStatus.COMPLETED)

        step.transition(StepStatus.LOADING)
        step.transition(StepStatus.COMPLETED)
        assert step.status == StepStatus.COMPLETED

    def test_pending_cannot_complete(self):
        step = BridgeStep(definition=steps(("a", "s", ok([], "a"), {}))[0])
        with pytest.raises(StepTransitionError):
            step.transition(StepStatus.COMPLETED)


class TestIrreversibleSteps:
    """Submitted transactions are never sent twice."""

    async def test_submitted_without_confirm_is_final(self):
        async def burn(ctx):
            ctx.mark_submitted("0xburn")
            raise AdapterError("receipt unavailable", "evm:1")

        workflow = BridgeWorkflow(steps(("burn", "s", burn, {"irreversible": True})))
        snapshot = await workflow.start()

        step = snapshot.step("burn")
        assert step.status == StepStatus.FAILED
        assert step.submitted
        assert step.tx_hash == "0xburn"
        assert not step.retryable
        with pytest.raises(StepTransitionError):
            await workflow.retry_step("burn")

    async def test_retry_resumes_at_confirmation(self):
        calls = {"submit": 0, "confirm": 0}

        async def submit(ctx):
            calls["submit"] += 1
            ctx.mark_submitted("0xlock")
            raise RemoteTimeoutError("Timed out waiting for bridge transfer", attempts=3)

        async def confirm(ctx):
            calls["confirm"] += 1
            assert ctx.resuming
            return ctx.tx_hash

        workflow = BridgeWorkflow(steps(("lock", "s", submit, {"irreversible": True, "confirm": confirm})))
        snapshot = await workflow.start()
        assert snapshot.step("lock").retryable

        snapshot = await workflow.retry_step("lock")

        assert calls == {"submit": 1, "confirm": 1}
        assert snapshot.step("lock").status == StepStatus.COMPLETED
        assert snapshot.step("lock").output == "0xlock"

    async def test_chain_error_after_submission_is_final(self):
        async def submit(ctx):
            ctx.mark_submitted()
            raise RemoteError("Cast failed", result={"cast": 1})

        async def confirm(ctx):
            return None

        workflow = BridgeWorkflow(steps(("cast", "s", submit, {"irreversible": True, "confirm": confirm})))
        snapshot = await workflow.start()

        assert not snapshot.step("cast").retryable
        assert snapshot.step("cast").output == {"cast": 1}

    async def test_failure_before_submission_is_retryable(self):
        log = []
        workflow = BridgeWorkflow(steps(("lock", "s", flaky(log, "lock"), {"irreversible": True})))
        snapshot = await workflow.start()
        assert snapshot.step("lock").retryable

        snapshot = await workflow.retry_step("lock")
        assert snapshot.status == WorkflowStatus.COMPLETED


class TestCancellation:

    async def test_cancel_keeps_step_state(self):
        started = asyncio.Event()

        async def hang(ctx):
            started.set()
            await asyncio.Event().wait()

        workflow = BridgeWorkflow(steps(("a", "s", ok([], "a"), {}), ("b", "s", hang, {})))
        run = asyncio.create_task(workflow.start())
        await started.wait()

        snapshot = await workflow.cancel()

        assert snapshot.status == WorkflowStatus.CANCELLED
        assert snapshot.step("a").status == StepStatus.COMPLETED
        assert snapshot.step("b").status == StepStatus.LOADING
        assert (await run).status == WorkflowStatus.CANCELLED

    async def test_cancel_halted(self):
        workflow = BridgeWorkflow(steps(("a", "s", flaky([], "a"), {})))
        await workflow.start()

        snapshot = await workflow.cancel()

        assert snapshot.status == WorkflowStatus.CANCELLED
        assert snapshot.step("a").status == StepStatus.FAILED
        with pytest.raises(WorkflowError):
            await workflow.retry_step("a")


class TestProgress:

    async def test_report_does_not_change_status(self):
        seen = []

        async def slow(ctx):
            ctx.report("WaitingOnMint")
            return None

        workflow = BridgeWorkflow(steps(("a", "s", slow, {})))
        workflow.add_listener(lambda snap: seen.append((snap.step("a").status, snap.step("a").message)))

        await workflow.start()

        assert (StepStatus.LOADING, "WaitingOnMint") in seen
        assert seen[-1][0] == StepStatus.COMPLETED

    async def test_broken_listener_is_ignored(self):
        def broken(_snapshot):
            raise RuntimeError("render failed")

        workflow = BridgeWorkflow(steps(("a", "s", ok([], "a"), {})))
        workflow.add_listener(broken)

        assert (await workflow.start()).status == WorkflowStatus.COMPLETED


class TestStageStatus:

    @pytest.mark.parametrize("statuses, expected", [
        ([StepStatus.PENDING, StepStatus.PENDING], StageStatus.PENDING),
        ([StepStatus.COMPLETED, StepStatus.PENDING], StageStatus.LOADING),
        ([StepStatus.LOADING, StepStatus.PENDING], StageStatus.LOADING),
        ([StepStatus.COMPLETED, StepStatus.FAILED], StageStatus.FAILED),
        ([StepStatus.FAILED, StepStatus.LOADING], StageStatus.LOADING),
        ([StepStatus.COMPLETED, StepStatus.SKIPPED], StageStatus.COMPLETED),
    ])
    def test_aggregate(self, statuses, expected):
        assert stage_status(statuses) == expected


class TestTemplates:

    def test_import_needs_every_action(self):
        with pytest.raises(ValueError, match="No action"):
            IMPORT_TEMPLATE.build({"connect": ok([], "connect")})

    def test_unknown_action_rejected(self):
        actions = {s.id: ok([], s.id) for s in EXPORT_TEMPLATE.steps}
        actions["launch-rocket"] = ok([], "x")
        with pytest.raises(ValueError, match="unknown"):
            EXPORT_TEMPLATE.build(actions)

    def test_irreversible_legs_marked(self):
        irreversible = {s.id for s in IMPORT_TEMPLATE.steps if s.irreversible}
        assert "transfer-nft-to-bridge" in irreversible
        assert "initiate-mint" in irreversible
        assert "initiate-cast" in {s.id for s in EXPORT_TEMPLATE.steps if s.irreversible}

    def test_funding_precedes_paid_steps(self):
        """Gas is funded before anything on the IC is approved or deployed."""
        export = [s.id for s in EXPORT_TEMPLATE.steps]
        assert export.index("fund-gas-account") < export.index("approve-cycles-remote")
        assert export.index("fund-gas-account") < export.index("deploy-remote-contract")

        returning = [s.id for s in RETURN_TEMPLATE.steps]
        assert returning.index("fund-burn-address") < returning.index("approve-cycles-cast")
        assert returning.index("approve-cknft-transfer") < returning.index("initiate-cast")

    def test_burn_and_return_stages(self):
        for template in (BURN_TEMPLATE, RETURN_TEMPLATE):
            actions = {s.id: ok([], s.id) for s in template.steps}
            snapshot = template.build(actions).snapshot()
            assert [s.title for s in snapshot.stages] == list(template.stage_titles.values())

        assert {s.id for s in BURN_TEMPLATE.steps if s.irreversible} == {"transfer-to-burn", "remint-cknft"}
        assert {s.id for s in RETURN_TEMPLATE.steps if s.irreversible} == {"fund-burn-address", "initiate-cast"}

    def test_each_build_is_fresh(self):
        actions = {s.id: ok([], s.id) for s in IMPORT_TEMPLATE.steps}
        first = IMPORT_TEMPLATE.build(actions)
        second = IMPORT_TEMPLATE.build(actions)

        assert first.workflow_id != second.workflow_id
        assert first.get_step("connect") is not second.get_step("connect")
        assert [s.title for s in first.snapshot().stages] == list(IMPORT_TEMPLATE.stage_titles.values())
