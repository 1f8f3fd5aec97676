"""A small saga runner: forward steps with matching compensations.

Steps run in order against a shared context dict. When a step raises, the
steps that already completed are compensated in reverse order and the
original exception is re-raised. If a compensation itself fails, the
remaining compensations are still attempted and a ``CompensationFailure``
is raised once they are done, chained to the failure that started the
rollback.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from .errors import CompensationFailure, OrderError

logger = logging.getLogger("orders.saga")


@dataclass(frozen=True)
class SagaStep:
    """One forward action and the compensation that undoes it.

    Attributes:
        name: Step name used in logs and in ``CompensationFailure``.
        action: Callable receiving the saga context.
        compensation: Optional undo callable receiving the same context.
        phase: Tag added to ``OrderError`` context when the action fails,
            so callers can tell creation-phase from reservation-phase
            failures.
    """

    name: str
    action: Callable[[dict], Any]
    compensation: Optional[Callable[[dict], Any]] = None
    phase: str = "creation"


class Saga:
    def __init__(self, name: str, steps: Sequence[SagaStep]):
        self.name = name
        self.steps = list(steps)

    def run(self, context: dict) -> dict:
        """Execute every step, compensating backward on the first failure.

        Returns:
            dict: The context, as mutated by the steps.

        Raises:
            Exception: Whatever the failing step raised, after rollback.
            CompensationFailure: If any compensation could not complete.
        """
        completed = []
        for step in self.steps:
            try:
                step.action(context)
            except Exception as exc:
                if isinstance(exc, OrderError):
                    exc.context.setdefault("phase", step.phase)
                logger.info(
                    "saga step failed",
                    extra={"saga": self.name, "step": step.name, "reason": str(exc)},
                )
                self._compensate(completed, context, exc)
                raise
            completed.append(step)
        return context

    def _compensate(self, completed, context: dict, cause: Exception) -> None:
        failures = []
        for step in reversed(completed):
            if step.compensation is None:
                continue
            try:
                step.compensation(context)
            except Exception as exc:
                logger.critical(
                    "saga compensation failed",
                    extra={
                        "saga": self.name,
                        "step": step.name,
                        "order_id": str(context.get("order_id")),
                        "cause": repr(exc),
                        "trigger": str(cause),
                    },
                )
                failures.append((step.name, exc))

        if failures:
            step_name, exc = failures[0]
            raise CompensationFailure(
                step=step_name,
                order_id=context.get("order_id"),
                cause=repr(exc),
                trigger=str(cause),
                failed_steps=[name for name, _ in failures],
            ) from cause
