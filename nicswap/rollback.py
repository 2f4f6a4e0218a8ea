# nicswap/rollback.py
import logging
from dataclasses import dataclass, field
from typing import Callable

log = logging.getLogger(__name__)


@dataclass
class RollbackStep:
    description: str
    action: Callable[[], None]


@dataclass
class UnwindResult:
    ok: bool
    last_attempted_index: int | None = None
    failed_step: str | None = None
    error: Exception | None = None
    # Older steps never attempted, most recent first.
    pending: list = field(default_factory=list)

    @property
    def manual_steps(self):
        steps = [self.failed_step] if self.failed_step else []
        return steps + self.pending


class RollbackStack:
    """
    Compensating actions for the reversible part of the migration.

    Unwinding runs each compensation once, newest first. The first failure
    stops the unwind; the failed step and everything older are returned for
    manual execution.
    """

    def __init__(self):
        self._steps: list[RollbackStep] = []

    def push(self, description, action):
        self._steps.append(RollbackStep(description, action))

    def __len__(self):
        return len(self._steps)

    def unwind_all(self) -> UnwindResult:
        if self._steps:
            log.warning("Error occurred... rolling back %d step(s)", len(self._steps))

        last_attempted = None
        for index in range(len(self._steps) - 1, -1, -1):
            step = self._steps[index]
            last_attempted = index
            log.info("- undo step #%d: %s", index + 1, step.description)
            try:
                step.action()
            except Exception as e:
                log.error("Undo step #%d failed: %s", index + 1, e)
                pending = [s.description for s in reversed(self._steps[:index])]
                self._steps = self._steps[:index + 1]
                return UnwindResult(
                    ok=False,
                    last_attempted_index=index,
                    failed_step=step.description,
                    error=e,
                    pending=pending,
                )

        self._steps.clear()
        log.info("Migration steps were successfully rolled back")
        return UnwindResult(ok=True, last_attempted_index=last_attempted)
