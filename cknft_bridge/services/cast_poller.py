"""
Polling of remote progress: casts, mints and remote deployments.

Every loop is a plain coroutine, so cancelling the task that awaits it stops
further queries. Query failures count as a non-terminal round; only an
exhausted attempt budget or a chain-reported error ends a poll early.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from cknft_bridge.config import settings
from cknft_bridge.errors import BridgeError, RemoteError, RemoteTimeoutError
from cknft_bridge.ic.base import MirrorCanisterClient
from cknft_bridge.models import CastState, CastStatus
from cknft_bridge.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
Progress = Callable[[str], None]


@dataclass
class TerminalResult:
    """Final (or last observed) state of a batch of casts."""
    succeeded: bool
    statuses: dict[int, Optional[CastStatus]] = field(default_factory=dict)
    attempts: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> list[CastStatus]:
        return [s for s in self.statuses.values() if s is not None and s.state == CastState.ERROR]

    @property
    def pending(self) -> list[int]:
        return [
            cast_id for cast_id, s in self.statuses.items()
            if s is None or not s.state.is_terminal
        ]


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    is_done: Callable[[T], bool],
    interval: Optional[float] = None,
    max_attempts: Optional[int] = None,
    sleep: Sleep = asyncio.sleep,
    on_progress: Optional[Callable[[T], None]] = None,
    what: str = "remote state",
) -> T:
    """
    Call ``fetch`` until ``is_done`` accepts its value.

    Returns:
        The first accepted value

    Raises:
        RemoteTimeoutError: the attempt budget ran out; ``result`` holds the
            last value fetched successfully
    """
    interval = settings.cast_poll_interval_seconds if interval is None else interval
    max_attempts = max_attempts or settings.deployment_poll_max_attempts

    last: Optional[T] = None
    for attempt in range(1, max_attempts + 1):
        try:
            value = await fetch()
        except BridgeError as e:
            logger.warning("Poll query failed", what=what, attempt=attempt, error=str(e))
        else:
            last = value
            if is_done(value):
                return value
            if on_progress:
                on_progress(value)

        if attempt < max_attempts:
            await sleep(interval)

    raise RemoteTimeoutError(f"Timed out waiting for {what}", result=last, attempts=max_attempts)


class CastStatusPoller:
    """Waits for a batch of casts to reach terminal states."""

    def __init__(
        self,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.interval = settings.cast_poll_interval_seconds if interval is None else interval
        self.max_attempts = max_attempts or settings.cast_poll_max_attempts
        self._sleep = sleep

    async def poll_until_terminal(
        self,
        cast_ids: list[int],
        source: MirrorCanisterClient,
        on_progress: Optional[Progress] = None,
    ) -> TerminalResult:
        """
        Poll ``source`` until every cast is terminal.

        Sub-state changes are reported through ``on_progress``; they never
        change the calling step's status.

        Raises:
            RemoteError: some cast ended in Error (``result`` is the TerminalResult)
            RemoteTimeoutError: the attempt budget ran out
        """
        if not cast_ids:
            raise ValueError("No casts to poll")

        statuses: dict[int, Optional[CastStatus]] = {cast_id: None for cast_id in cast_ids}
        seen: dict[int, CastState] = {}

        for attempt in range(1, self.max_attempts + 1):
            pending = [cast_id for cast_id, s in statuses.items() if s is None or not s.state.is_terminal]
            try:
                fresh = await source.cast_status(pending)
            except BridgeError as e:
                logger.warning("Cast status query failed", attempt=attempt, error=str(e))
            else:
                for cast_id, status in zip(pending, fresh):
                    if status is None:
                        continue
                    statuses[cast_id] = status
                    if seen.get(cast_id) != status.state:
                        seen[cast_id] = status.state
                        if on_progress:
                            on_progress(self._describe(cast_id, status, len(cast_ids)))

            states = [s.state if s else None for s in statuses.values()]
            if all(state is not None and state.is_terminal for state in states):
                result = TerminalResult(
                    succeeded=all(state.is_success for state in states),
                    statuses=statuses,
                    attempts=attempt,
                )
                if not result.succeeded:
                    errors = "; ".join(f"cast {s.cast_id}: {s.detail or 'Error'}" for s in result.failed)
                    result.error = errors
                    logger.error("Cast failed", cast_ids=cast_ids, error=errors)
                    raise RemoteError(f"Cast failed: {errors}", result=result, chain="ic", code="cast_error")
                logger.info("Casts completed", cast_ids=cast_ids, attempts=attempt)
                return result

            if attempt < self.max_attempts:
                await self._sleep(self.interval)

        result = TerminalResult(
            succeeded=False,
            statuses=statuses,
            attempts=self.max_attempts,
            error="Cast polling timeout",
        )
        logger.warning("Cast polling timed out", cast_ids=cast_ids, pending=result.pending)
        raise RemoteTimeoutError("Cast polling timeout", result=result, attempts=self.max_attempts)

    @staticmethod
    def _describe(cast_id: int, status: CastStatus, total: int) -> str:
        prefix = f"Cast {cast_id}: " if total > 1 else ""
        if status.detail and status.state != CastState.ERROR:
            return f"{prefix}{status.state.value} ({status.detail})"
        return f"{prefix}{status.state.value}"
