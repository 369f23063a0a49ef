"""
Saga runner for operations that span independent stores.

Steps run in order. Each step receives the shared context dict and its result
is stored in the context under the step name. When a step fails, the
compensations of the already completed steps run in reverse order and a
SagaError is raised with the original exception chained.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

StepAction = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass
class SagaStep:
    name: str
    action: StepAction
    compensate: StepAction | None = None


class SagaError(Exception):
    def __init__(self, saga: str, failed_step: str, completed_steps: list[str], compensation_errors: list[str]):
        self.saga = saga
        self.failed_step = failed_step
        self.completed_steps = completed_steps
        self.compensation_errors = compensation_errors
        super().__init__(f"Saga '{saga}' failed at step '{failed_step}'")


@dataclass
class Saga:
    name: str
    compensate_on_failure: bool = True
    steps: list[SagaStep] = field(default_factory=list)

    def add_step(self, name: str, action: StepAction, compensate: StepAction | None = None) -> "Saga":
        self.steps.append(SagaStep(name=name, action=action, compensate=compensate))
        return self

    async def run(self, context: dict[str, Any] | None = None) -> dict[str, Any]:
        context = {} if context is None else context
        completed: list[SagaStep] = []

        for step in self.steps:
            try:
                context[step.name] = await step.action(context)
            except Exception as exc:
                logger.warning("Saga %s failed at step %s: %s", self.name, step.name, exc)
                errors = await self._unwind(completed, context) if self.compensate_on_failure else []
                raise SagaError(self.name, step.name, [s.name for s in completed], errors) from exc
            completed.append(step)

        return context

    async def _unwind(self, completed: list[SagaStep], context: dict[str, Any]) -> list[str]:
        errors = []
        for step in reversed(completed):
            if step.compensate is None:
                continue
            try:
                await step.compensate(context)
                logger.info("Saga %s compensated step %s", self.name, step.name)
            except Exception as exc:
                # Keep unwinding; the failure is reported to the caller
                logger.exception("Saga %s could not compensate step %s", self.name, step.name)
                errors.append(f"{step.name}: {exc}")
        return errors
