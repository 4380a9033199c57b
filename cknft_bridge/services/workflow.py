"""
Staged bridge workflow.

A workflow is an ordered list of steps grouped into stages. Steps run
strictly in order; a failed step halts the run until it is retried (when
allowed) or the workflow is cancelled. Stage status is always derived from
its steps.

Step status transitions:

    Pending -> Loading -> Completed | Skipped | Failed
    Failed  -> Loading   (retry_step, retryable steps only)

Irreversible steps (lock, burn, cast) call ``StepContext.mark_submitted``
once their transaction is out. From then on a retry runs the step's
``confirm`` action instead of the original one, and a step without a
``confirm`` action can no longer be retried.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from cknft_bridge.errors import RemoteError, StepTransitionError, WorkflowError
from cknft_bridge.utils.logging import LoggerMixin, log_context


class StepStatus(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_done(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.SKIPPED)


class StageStatus(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    HALTED = "halted"  # a step failed; retry or cancel
    COMPLETED = "completed"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.LOADING},
    StepStatus.LOADING: {StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.FAILED},
    StepStatus.FAILED: {StepStatus.LOADING},
    StepStatus.COMPLETED: set(),
    StepStatus.SKIPPED: set(),
}


StepAction = Callable[["StepContext"], Awaitable[Any]]


@dataclass(frozen=True)
class StepDefinition:
    """Static description of a step."""
    id: str
    title: str
    stage: str
    action: StepAction
    retryable: bool = True
    irreversible: bool = False
    confirm: Optional[StepAction] = None
    description: str = ""


@dataclass
class BridgeStep:
    """Mutable run state of one step. Owned by exactly one workflow."""
    definition: StepDefinition
    status: StepStatus = StepStatus.PENDING
    retryable: bool = True
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    message: Optional[str] = None
    output: Any = None
    submitted: bool = False
    attempts: int = 0

    @property
    def id(self) -> str:
        return self.definition.id

    def transition(self, new: StepStatus) -> None:
        if new not in _TRANSITIONS[self.status]:
            raise StepTransitionError(f"Step {self.id}: {self.status.value} -> {new.value} not allowed")
        if self.status == StepStatus.FAILED and not self.retryable:
            raise StepTransitionError(f"Step {self.id} is not retryable")
        self.status = new


# ===================
# Snapshots
# ===================

@dataclass(frozen=True)
class StepSnapshot:
    id: str
    title: str
    stage: str
    status: StepStatus
    retryable: bool
    irreversible: bool
    submitted: bool
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    message: Optional[str] = None
    output: Any = None


@dataclass(frozen=True)
class StageSnapshot:
    id: str
    title: str
    status: StageStatus
    steps: tuple[StepSnapshot, ...]


@dataclass(frozen=True)
class WorkflowSnapshot:
    workflow_id: str
    status: WorkflowStatus
    stages: tuple[StageSnapshot, ...]
    current_step: Optional[str] = None
    failed_step: Optional[str] = None

    @property
    def steps(self) -> tuple[StepSnapshot, ...]:
        return tuple(step for stage in self.stages for step in stage.steps)

    def step(self, step_id: str) -> StepSnapshot:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def stage(self, stage_id: str) -> StageSnapshot:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        raise KeyError(stage_id)


def stage_status(statuses: list[StepStatus]) -> StageStatus:
    """Aggregate status of a stage from its steps' statuses."""
    if statuses and all(s.is_done for s in statuses):
        return StageStatus.COMPLETED
    loading = any(s == StepStatus.LOADING for s in statuses)
    if any(s == StepStatus.FAILED for s in statuses) and not loading:
        return StageStatus.FAILED
    if loading or any(s.is_done for s in statuses):
        return StageStatus.LOADING
    return StageStatus.PENDING


# ===================
# Execution
# ===================

class StepContext:
    """Handle given to a running step action."""

    def __init__(self, workflow: "BridgeWorkflow", step: BridgeStep):
        self._workflow = workflow
        self._step = step
        self.skipped_reason: Optional[str] = None

    @property
    def context(self) -> dict:
        """Outputs shared between the steps of one workflow."""
        return self._workflow.context

    @property
    def step_id(self) -> str:
        return self._step.id

    @property
    def resuming(self) -> bool:
        """True when an irreversible step is re-entered after its submission."""
        return self._step.submitted

    @property
    def tx_hash(self) -> Optional[str]:
        return self._step.tx_hash

    def report(self, message: str) -> None:
        """Progress message on the active step. Does not change its status."""
        self._step.message = message
        self._workflow._notify()

    def mark_submitted(self, tx_hash: Optional[str] = None) -> None:
        """Record that the irreversible transaction is out."""
        self._step.submitted = True
        if tx_hash:
            self._step.tx_hash = tx_hash
        self._workflow.log.info("Step submitted", step=self._step.id, tx_hash=tx_hash)
        self._workflow._notify()

    def skip(self, reason: str) -> None:
        """Finish the step as Skipped (nothing to do)."""
        self.skipped_reason = reason


Listener = Callable[[WorkflowSnapshot], None]


class BridgeWorkflow(LoggerMixin):
    """Drives one bridge operation through its steps. Never reused across runs."""

    def __init__(
        self,
        definitions: list[StepDefinition],
        stage_titles: Optional[dict[str, str]] = None,
        context: Optional[dict] = None,
        workflow_id: Optional[str] = None,
    ):
        if not definitions:
            raise ValueError("A workflow needs at least one step")

        ids = [d.id for d in definitions]
        if len(set(ids)) != len(ids):
            raise ValueError("Step ids must be unique")

        self._stage_order: list[str] = []
        for definition in definitions:
            if definition.stage not in self._stage_order:
                self._stage_order.append(definition.stage)
            elif self._stage_order[-1] != definition.stage:
                raise ValueError(f"Steps of stage {definition.stage} must be contiguous")

        self.workflow_id = workflow_id or uuid.uuid4().hex[:12]
        self.stage_titles = stage_titles or {}
        self.context: dict = context if context is not None else {}
        self.status = WorkflowStatus.IDLE
        self._steps = [BridgeStep(definition=d, retryable=d.retryable) for d in definitions]
        self._listeners: list[Listener] = []
        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    # ===================
    # Queries
    # ===================

    def get_step(self, step_id: str) -> BridgeStep:
        for step in self._steps:
            if step.id == step_id:
                return step
        raise WorkflowError(f"Unknown step: {step_id}")

    @property
    def current_step(self) -> Optional[str]:
        for step in self._steps:
            if not step.status.is_done:
                return step.id
        return None

    @property
    def failed_step(self) -> Optional[str]:
        for step in self._steps:
            if step.status == StepStatus.FAILED:
                return step.id
        return None

    def snapshot(self) -> WorkflowSnapshot:
        stages = []
        for stage_id in self._stage_order:
            steps = tuple(
                StepSnapshot(
                    id=s.id,
                    title=s.definition.title,
                    stage=stage_id,
                    status=s.status,
                    retryable=s.retryable,
                    irreversible=s.definition.irreversible,
                    submitted=s.submitted,
                    error=s.error,
                    tx_hash=s.tx_hash,
                    message=s.message,
                    output=s.output,
                )
                for s in self._steps if s.definition.stage == stage_id
            )
            stages.append(StageSnapshot(
                id=stage_id,
                title=self.stage_titles.get(stage_id, stage_id),
                status=stage_status([s.status for s in steps]),
                steps=steps,
            ))
        return WorkflowSnapshot(
            workflow_id=self.workflow_id,
            status=self.status,
            stages=tuple(stages),
            current_step=self.current_step,
            failed_step=self.failed_step,
        )

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as e:
                # A broken observer must not break the run
                self.log.error("Workflow listener failed", error=str(e))

    # ===================
    # Commands
    # ===================

    async def start(self) -> WorkflowSnapshot:
        """Run from the first step until completion or the first failure."""
        if self.status != WorkflowStatus.IDLE:
            raise WorkflowError(f"Workflow already {self.status.value}")
        return await self._drive(0)

    async def retry_step(self, step_id: str) -> WorkflowSnapshot:
        """Re-enter a failed, retryable step and continue from there."""
        if self.status != WorkflowStatus.HALTED:
            raise WorkflowError(f"Nothing to retry while {self.status.value}")

        step = self.get_step(step_id)
        if step.status != StepStatus.FAILED:
            raise StepTransitionError(f"Step {step_id} has not failed")
        if not step.retryable:
            raise StepTransitionError(f"Step {step_id} is not retryable")

        self.log.info("Retrying step", workflow_id=self.workflow_id, step=step_id, attempts=step.attempts)
        return await self._drive(self._steps.index(step))

    async def cancel(self) -> WorkflowSnapshot:
        """Stop the run. Recorded step state is left as it is."""
        if self.status in (WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED):
            return self.snapshot()

        self._cancel_requested = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.status = WorkflowStatus.CANCELLED
        self.log.info("Workflow cancelled", workflow_id=self.workflow_id, step=self.current_step)
        self._notify()
        return self.snapshot()

    abort = cancel

    async def _drive(self, index: int) -> WorkflowSnapshot:
        self.status = WorkflowStatus.RUNNING
        self._task = asyncio.ensure_future(self._run(index))
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            self.status = WorkflowStatus.CANCELLED
        return self.snapshot()

    async def _run(self, index: int) -> None:
        with log_context(workflow_id=self.workflow_id):
            for position in range(index, len(self._steps)):
                step = self._steps[position]
                if step.status.is_done:
                    continue
                blocking = next((s for s in self._steps[:position] if not s.status.is_done), None)
                if blocking is not None:
                    raise StepTransitionError(f"Step {step.id} cannot start before {blocking.id}")

                if not await self._execute(step):
                    self.status = WorkflowStatus.HALTED
                    self._notify()
                    return

            self.status = WorkflowStatus.COMPLETED
            self.log.info("Workflow completed", steps=len(self._steps))
            self._notify()

    async def _execute(self, step: BridgeStep) -> bool:
        definition = step.definition
        resuming = step.submitted and definition.confirm is not None
        action = definition.confirm if resuming else definition.action

        step.transition(StepStatus.LOADING)
        step.error = None
        step.attempts += 1
        self._notify()

        ctx = StepContext(self, step)
        try:
            with log_context(step=step.id):
                self.log.info("Step started", step=step.id, resuming=resuming)
                output = await action(ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Step errors halt this step only; the caller decides on retry
            step.error = str(e)
            partial = getattr(e, "result", None)
            if partial is not None:
                step.output = partial
            if step.submitted and (definition.confirm is None or isinstance(e, RemoteError)):
                # Never resubmit an irreversible action
                step.retryable = False
            step.transition(StepStatus.FAILED)
            self.log.error(
                "Step failed",
                step=step.id,
                error=str(e),
                error_type=type(e).__name__,
                tx_hash=step.tx_hash,
                retryable=step.retryable,
            )
            return False

        if output is not None:
            step.output = output
        if ctx.skipped_reason is not None:
            step.message = ctx.skipped_reason
            step.transition(StepStatus.SKIPPED)
        else:
            step.transition(StepStatus.COMPLETED)
        self.log.info("Step finished", step=step.id, status=step.status.value)
        self._notify()
        return True


# ===================
# Templates
# ===================

@dataclass(frozen=True)
class StepTemplate:
    id: str
    title: str
    stage: str
    retryable: bool = True
    irreversible: bool = False
    description: str = ""


@dataclass(frozen=True)
class WorkflowTemplate:
    name: str
    stage_titles: dict[str, str]
    steps: tuple[StepTemplate, ...] = field(default_factory=tuple)

    def build(
        self,
        actions: dict[str, StepAction],
        confirms: Optional[dict[str, StepAction]] = None,
        context: Optional[dict] = None,
    ) -> BridgeWorkflow:
        """Bind actions to the template's steps; every step needs one."""
        confirms = confirms or {}
        missing = [s.id for s in self.steps if s.id not in actions]
        if missing:
            raise ValueError(f"No action for steps: {', '.join(missing)}")
        unknown = set(actions) - {s.id for s in self.steps}
        if unknown:
            raise ValueError(f"Actions for unknown steps: {', '.join(sorted(unknown))}")

        definitions = [
            StepDefinition(
                id=s.id,
                title=s.title,
                stage=s.stage,
                action=actions[s.id],
                retryable=s.retryable,
                irreversible=s.irreversible,
                confirm=confirms.get(s.id),
                description=s.description,
            )
            for s in self.steps
        ]
        return BridgeWorkflow(definitions, stage_titles=dict(self.stage_titles), context=context)


IMPORT_TEMPLATE = WorkflowTemplate(
    name="import",
    stage_titles={
        "setup": "Setup & Connection",
        "canister": "Canister Management",
        "preparation": "Preparation",
        "execution": "Execution",
    },
    steps=(
        StepTemplate("connect", "Connect Wallet", "setup"),
        StepTemplate("verify-ownership", "Verify Ownership", "setup"),
        StepTemplate("check-cknft-canister", "Check ckNFT Canister", "canister"),
        StepTemplate("estimate-costs", "Calculate Costs", "canister"),
        StepTemplate("check-balances", "Check Balances", "canister"),
        StepTemplate("approve-cycles-orchestrator", "Approve Cycles (Orchestrator)", "canister"),
        StepTemplate("create-cknft-canister", "Create ckNFT Canister", "canister", irreversible=True),
        StepTemplate("approve-cycles-mint", "Approve Cycles (Mint)", "preparation"),
        StepTemplate("get-approval-address", "Get Approval Address", "preparation"),
        StepTemplate("transfer-nft-to-bridge", "Transfer to Bridge", "execution", irreversible=True),
        StepTemplate("initiate-mint", "Mint ckNFT", "execution", irreversible=True),
        StepTemplate("verify-mint-complete", "Verify Mirror Ownership", "execution"),
    ),
)


EXPORT_TEMPLATE = WorkflowTemplate(
    name="export",
    stage_titles={
        "setup": "Setup & Connection",
        "contract": "Remote Contract",
        "preparation": "Preparation",
        "execution": "Cast Execution",
    },
    steps=(
        StepTemplate("connect", "Connect Wallet", "setup"),
        StepTemplate("verify-ownership", "Verify Ownership", "setup"),
        StepTemplate("check-remote-contract", "Check Remote Contract", "contract"),
        StepTemplate("get-funding-address", "Get Funding Address", "contract"),
        StepTemplate("estimate-costs", "Calculate Costs", "contract"),
        StepTemplate("check-balances", "Check Balances", "contract"),
        StepTemplate("fund-gas-account", "Fund Gas Account", "contract", irreversible=True),
        StepTemplate("approve-cycles-remote", "Approve Cycles (Remote)", "contract"),
        StepTemplate("deploy-remote-contract", "Deploy Remote Contract", "contract", irreversible=True),
        StepTemplate("approve-cycles-cast", "Approve Cycles (Cast)", "preparation"),
        StepTemplate("initiate-cast", "Cast to Remote Chain", "execution", irreversible=True),
        StepTemplate("verify-remote-ownership", "Verify Remote Ownership", "execution"),
    ),
)


BURN_TEMPLATE = WorkflowTemplate(
    name="burn",
    stage_titles={
        "setup": "Setup & Connection",
        "preparation": "Preparation",
        "execution": "Burn & Remint",
    },
    steps=(
        StepTemplate("connect", "Connect Wallet", "setup"),
        StepTemplate("verify-ownership", "Verify Ownership", "setup"),
        StepTemplate("check-cknft-canister", "Check ckNFT Canister", "setup"),
        StepTemplate("estimate-costs", "Calculate Costs", "preparation"),
        StepTemplate("check-balances", "Check Balances", "preparation"),
        StepTemplate("approve-cycles-burn", "Approve Cycles (Remint)", "preparation"),
        StepTemplate("get-burn-address", "Get Burn Address", "preparation"),
        StepTemplate("transfer-to-burn", "Transfer to Burn Address", "execution", irreversible=True),
        StepTemplate("remint-cknft", "Remint ckNFT", "execution", irreversible=True),
        StepTemplate("verify-remint-complete", "Verify Mirror Ownership", "execution"),
    ),
)


RETURN_TEMPLATE = WorkflowTemplate(
    name="return",
    stage_titles={
        "setup": "Setup & Connection",
        "preparation": "Preparation",
        "execution": "Return Execution",
    },
    steps=(
        StepTemplate("connect", "Connect Wallet", "setup"),
        StepTemplate("verify-ownership", "Verify Ownership", "setup"),
        StepTemplate("check-native-chain", "Check Native Chain", "setup"),
        StepTemplate("get-burn-addresses", "Get Burn Addresses", "preparation"),
        StepTemplate("estimate-costs", "Calculate Costs", "preparation"),
        StepTemplate("check-balances", "Check Balances", "preparation"),
        StepTemplate("fund-burn-address", "Fund Burn Address", "preparation", irreversible=True),
        StepTemplate("approve-cycles-cast", "Approve Cycles (Cast)", "preparation"),
        StepTemplate("approve-cknft-transfer", "Approve ckNFT Transfer", "preparation"),
        StepTemplate("initiate-cast", "Return to Native Chain", "execution", irreversible=True),
        StepTemplate("wait-native-confirmation", "Verify Native Ownership", "execution"),
    ),
)
