# nicswap/errors.py
from nicswap.models import Phase


class MigrationError(RuntimeError):
    """Base class for every failure the migration reports to the operator."""


class ValidationError(MigrationError):
    """Raised before any mutating call was issued; nothing to undo."""


class InstanceNotFound(ValidationError):
    pass


class AmbiguousMatch(ValidationError):
    pass


class GatewayError(MigrationError):
    """A provider call failed."""


class WaitTimedOut(GatewayError):
    """A bounded wait ran out; the operation may still complete on its own."""

    def __init__(self, description, timeout, last_state=None):
        super().__init__(
            f"Timeout reached after {timeout}s while waiting for {description} "
            f"(last state: {last_state})"
        )
        self.description = description
        self.timeout = timeout
        self.last_state = last_state


class OperationFailed(GatewayError):
    """The provider reported a definitive failure."""


class CheckpointError(MigrationError):
    pass


class StepFailure(MigrationError):
    """
    A pipeline step failed.

    ``state`` holds the last completed phase; ``terminal_state`` is the same
    state moved to the side exit the migration ended in.
    """

    terminal_phase: Phase

    def __init__(self, message, state, cause):
        super().__init__(message)
        self.state = state
        self.cause = cause

    @property
    def terminal_state(self):
        return self.state.advance(self.terminal_phase)

    @property
    def timed_out(self):
        return isinstance(self.cause, WaitTimedOut)


class ReversibleStepFailure(StepFailure):
    """A step before the commit point failed and the rollback stack was unwound."""

    terminal_phase = Phase.FAILED

    def __init__(self, state, unwind, cause):
        restored = "state restored" if unwind.ok else "rollback incomplete"
        super().__init__(f"Migration failed after {state.phase.value} ({restored}): {cause}", state, cause)
        self.unwind = unwind


class PostCommitFailure(StepFailure):
    """A step after the commit point failed; only a resume can finish the swap."""

    terminal_phase = Phase.NEEDS_MANUAL_RECREATE

    def __init__(self, state, checkpoint_path, cause):
        super().__init__(f"Migration stopped after {state.phase.value}: {cause}", state, cause)
        self.checkpoint_path = checkpoint_path
