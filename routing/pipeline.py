"""
Routing Pipeline — ordered chain of assignment policies for a new conversation.

A pipeline is a set of steps keyed by id. Running it starts at the entry step
(id 1) and asks each step for a verdict:

  - final      → the ChatAssignment is the answer
  - non-final  → continue at ``next_step``

A non-final verdict without a next step, an unknown step id and a chain that
never terminates are configuration errors. They are logged and raised, never
turned into a silent dead end.

The pipeline knows nothing about concrete step kinds; each step is an id plus
an ``evaluate`` coroutine built by the step registry (routing/steps.py).
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from models.schemas import ChatAssignment, Contact

logger = structlog.get_logger()

DEFAULT_MAX_ITERATIONS = 50


class PipelineConfigurationError(Exception):
    """A routing pipeline is wired wrong (missing next step, cycle, unknown step...)."""


@dataclass
class RoutingContext:
    """Everything a step may look at while deciding."""
    tenant: str
    sector_id: int
    contact: Contact
    variables: dict[str, Any] = field(default_factory=dict)
    steps_taken: list[int] = field(default_factory=list)

    def as_data(self) -> dict[str, Any]:
        """Flat dict for condition evaluation (dot paths like ``contact.name``)."""
        return {
            "tenant": self.tenant,
            "sector_id": self.sector_id,
            "contact": self.contact.model_dump(),
            "variables": dict(self.variables),
            **self.variables,
        }


StepEvaluator = Callable[[RoutingContext], Awaitable[ChatAssignment]]


@dataclass(frozen=True)
class RoutingStep:
    id: int
    kind: str
    evaluate: StepEvaluator
    fallback_step_id: Optional[int] = None
    description: str = ""


class RoutingPipeline:
    """
    Immutable-once-built chain of steps for one (tenant, sector).

    Usage:
        pipeline = RoutingPipeline("acme", 3)
        pipeline.add_step(RoutingStep(1, "only_admin", evaluate))
        assignment = await pipeline.run(contact)
    """

    def __init__(
        self,
        tenant: str,
        sector_id: int,
        entry_step_id: int = 1,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        self.tenant = tenant
        self.sector_id = sector_id
        self.entry_step_id = entry_step_id
        self.max_iterations = max_iterations
        self._steps: dict[int, RoutingStep] = {}
        self._active: dict[str, asyncio.Future] = {}

    @property
    def steps(self) -> list[RoutingStep]:
        return [self._steps[i] for i in sorted(self._steps)]

    def add_step(self, step: RoutingStep) -> "RoutingPipeline":
        if step.id in self._steps:
            raise PipelineConfigurationError(
                f"duplicate step id {step.id} in pipeline {self.tenant}:{self.sector_id}"
            )
        self._steps[step.id] = step
        return self

    async def run(self, contact: Contact, variables: Optional[dict[str, Any]] = None) -> ChatAssignment:
        """Run the chain for a contact. Concurrent runs for one contact share the result."""
        running = self._active.get(contact.id)
        if running is None:
            running = asyncio.ensure_future(self._evaluate(contact, variables or {}))
            self._active[contact.id] = running
            running.add_done_callback(lambda _f, cid=contact.id: self._active.pop(cid, None))
        return await asyncio.shield(running)

    async def _evaluate(self, contact: Contact, variables: dict[str, Any]) -> ChatAssignment:
        ctx = RoutingContext(self.tenant, self.sector_id, contact, dict(variables))
        step_id: Optional[int] = self.entry_step_id

        for _ in range(self.max_iterations):
            step = self._steps.get(step_id)
            if step is None:
                self._config_error(f"unknown step id {step_id}", ctx)
            ctx.steps_taken.append(step.id)

            try:
                verdict = await step.evaluate(ctx)
            except PipelineConfigurationError:
                raise
            except Exception as e:
                if step.fallback_step_id is None:
                    raise
                logger.warning("routing_step_failed_fallback",
                               tenant=self.tenant, sector_id=self.sector_id,
                               step_id=step.id, kind=step.kind,
                               fallback=step.fallback_step_id, error=str(e))
                step_id = step.fallback_step_id
                continue

            if verdict.final:
                assignment = verdict
                if assignment.sector_id is None:
                    assignment = assignment.model_copy(update={"sector_id": self.sector_id})
                logger.info("routing_assigned",
                            tenant=self.tenant, sector_id=assignment.sector_id,
                            contact_id=contact.id,
                            owner=assignment.owner.kind.value,
                            operator_id=assignment.owner.operator_id,
                            steps=ctx.steps_taken)
                return assignment

            if verdict.next_step is None:
                self._config_error(
                    f"step {step.id} ({step.kind}) returned neither next step nor final result", ctx,
                )
            ctx.variables.update(verdict.context)
            step_id = verdict.next_step

        self._config_error(f"no final verdict after {self.max_iterations} steps (cycle?)", ctx)

    def _config_error(self, message: str, ctx: RoutingContext):
        logger.error("routing_pipeline_misconfigured",
                     tenant=self.tenant, sector_id=self.sector_id,
                     contact_id=ctx.contact.id, steps=ctx.steps_taken, error=message)
        raise PipelineConfigurationError(f"{self.tenant}:{self.sector_id}: {message}")
