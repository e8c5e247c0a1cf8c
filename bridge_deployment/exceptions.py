"""Exceptions raised while deploying and wiring an environment."""


class DeploymentError(Exception):
    """Base exception for deployment-related errors."""

    # Set by the orchestrator before re-raising so callers can resume.
    report = None


class CyclicDependency(DeploymentError, ValueError):
    """Raised when the step graph has no topological order."""

    def __init__(self, cycle):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency between steps: {' -> '.join(self.cycle)}")


class UnresolvedDependency(DeploymentError, ValueError):
    """Raised when a step references a component that is not registered."""

    def __init__(self, name: str, step: str = None):
        self.name = name
        self.step = step
        where = f" (required by '{step}')" if step else ""
        super().__init__(f"Component '{name}' is not registered{where}.")


class InvalidSecurityConfig(DeploymentError, ValueError):
    """Raised when a security stack or executor config would be rejected on-chain."""


class InvalidParameters(DeploymentError, ValueError):
    """Raised when resolved arguments do not match the contract ABI."""


class UnknownChain(DeploymentError, KeyError):
    """Raised when a chain name is not part of the environment."""


class StepError(DeploymentError):
    """Base exception for a step that failed at the ledger boundary."""

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"Step '{step}' failed: {message}")


class SubmissionFailed(StepError):
    """Raised when a transaction could not be submitted or confirmed after retries."""

    def __init__(self, step: str, cause: Exception):
        self.cause = cause
        super().__init__(step, f"{type(cause).__name__}: {cause}")


class ConfirmationTimeout(SubmissionFailed):
    """Raised when a submitted transaction was not confirmed in time."""


class ExecutionReverted(StepError):
    """Raised when the ledger rejected the transaction's logic."""

    def __init__(self, step: str, reason: str):
        self.reason = reason
        super().__init__(step, f"execution reverted: {reason}")


class PipelineCancelled(DeploymentError):
    """Raised when a run observes the cancellation signal."""
