"""Step ledger shared by the composite operations."""

from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from loguru import logger

from .errors import ClassifiedError, CommittedStep, EnhancedError, PartialResults, ProtocolError
from .recovery import Deadline, RecoveryEngine

T = TypeVar("T")


class StepLedger:
    """
    Runs the steps of one composite operation in order and records what committed.

    A failing step aborts the operation: the classified error is re-raised
    annotated with ``PartialResults`` so callers can tell "nothing happened"
    from "some steps committed, operation incomplete". Completed steps are
    never reversed. With a ``deadline`` every step runs in the time left on it
    and an expired deadline fails the step in flight like any other error.
    """

    def __init__(self, engine: RecoveryEngine, operation: str, user_address: Optional[str] = None,
                 deadline: Optional[Deadline] = None):
        self.engine = engine
        self.operation = operation
        self.user_address = user_address
        self.deadline = deadline
        self.committed: List[CommittedStep] = []

    @property
    def steps_committed(self) -> int:
        return len(self.committed)

    def partial_results(self, failed_step: Optional[str], exposure: tuple = ()) -> PartialResults:
        return PartialResults(
            steps_committed=len(self.committed),
            committed_steps=tuple(self.committed),
            failed_step=failed_step,
            exposure=tuple(exposure),
        )

    def _annotate(self, error: EnhancedError, failed_step: str, exposure: tuple) -> ClassifiedError:
        partial = self.partial_results(failed_step, exposure)
        if self.committed:
            logger.error(f"{self.operation}: step '{failed_step}' failed after "
                         f"{len(self.committed)} committed steps: {[s.name for s in self.committed]}")
        else:
            logger.warning(f"{self.operation}: step '{failed_step}' failed, nothing committed")
        return ClassifiedError(error.with_partial_results(partial))

    async def run(self, name: str, factory: Callable[[], Awaitable[T]], commits: bool = True,
                  exposure: tuple = ()) -> T:
        """Run one step; ``exposure`` describes what is left open if it fails."""
        try:
            if self.deadline is not None:
                result = await self.deadline.run(factory)
            else:
                result = await factory()
        except ClassifiedError as exc:
            raise self._annotate(exc.error, name, exposure)
        except Exception as exc:
            context = self.engine.context(self.operation, self.user_address, step=name)
            raise self._annotate(self.engine.enhance(exc, context), name, exposure)

        if commits:
            self.committed.append(CommittedStep(name=name, tx_hash=getattr(result, "tx_hash", "")))
            logger.debug(f"{self.operation}: committed '{name}'")
        return result

    def fail(self, error: ProtocolError, failed_step: str, exposure: tuple = ()) -> ClassifiedError:
        """Classify a failure detected between steps (e.g. a post-condition check)."""
        context = self.engine.context(self.operation, self.user_address, step=failed_step)
        return self._annotate(self.engine.enhance(error, context), failed_step, exposure)

    def transactions(self) -> Dict[str, str]:
        return {step.name: step.tx_hash for step in self.committed}

    def tx_hashes(self) -> List[str]:
        return [step.tx_hash for step in self.committed]

    def summary(self) -> Dict[str, Any]:
        return {"operation": self.operation, "steps": [s.name for s in self.committed]}
