"""
Exception taxonomy for the bridge engine.

Adapter errors are recoverable and retried by the caller. Balance and
allowance errors are user-actionable and halt a workflow before any
irreversible action. Remote errors come from the canister side: a timeout
means polling gave up, a remote error means the chain reported a failure.
"""

from typing import Any, Optional


class BridgeError(Exception):
    """Base exception for bridge errors."""
    def __init__(self, message: str, chain: Optional[str] = None, code: Optional[str] = None):
        self.message = message
        self.chain = chain
        self.code = code
        super().__init__(f"[{chain}] {message}" if chain else message)


class AdapterError(BridgeError):
    """RPC or network failure talking to a chain or canister."""
    pass


class RateLimitError(AdapterError):
    """Raised when a provider rate limit is hit."""
    pass


class EnumerationUnsupportedError(AdapterError):
    """The contract has no enumerable ownership index."""
    pass


class InsufficientBalanceError(BridgeError):
    """Raised when the fee ledger or native balance cannot cover the cost."""
    def __init__(self, message: str, required: int, available: int, chain: Optional[str] = None):
        self.required = required
        self.available = available
        super().__init__(message, chain, "insufficient_balance")


class InsufficientAllowanceError(BridgeError):
    """Raised when a fee-ledger approval is missing, too small or expired."""
    def __init__(self, message: str, spender: str, required: int, available: int):
        self.spender = spender
        self.required = required
        self.available = available
        super().__init__(message, "ic", "insufficient_allowance")


class OwnershipMismatchError(BridgeError):
    """The asset is no longer held where discovery last saw it."""
    pass


class RemoteError(BridgeError):
    """Chain-reported failure of a cast or mint."""
    def __init__(self, message: str, result: Any = None, chain: Optional[str] = None, code: Optional[str] = None):
        self.result = result
        super().__init__(message, chain, code)


class RemoteTimeoutError(BridgeError):
    """Polling budget exhausted before a terminal state was reached."""
    def __init__(self, message: str, result: Any = None, attempts: int = 0):
        self.result = result
        self.attempts = attempts
        super().__init__(message, None, "timeout")


class WorkflowError(BridgeError):
    """Raised for commands that are invalid in the workflow's current state."""
    pass


class StepTransitionError(WorkflowError):
    """Raised on an illegal step status transition."""
    pass
