"""
Pipeline construction and caching per (tenant, sector).

Flow definitions come from a RoutingConfigSource (YAML settings or the
``routing_flows`` / ``routing_steps`` tables). Without a persisted flow the
default chain is used:

    1 only_admin ─▶ 2 loyalty ─▶ 3 available_users ─▶ 4 send_to_admin

Persisted flows list steps in order. Disabled steps are dropped before ids
are assigned, so absent ids count from 1 over the enabled steps. The pipeline
enters at the first enabled step, and each non-final step continues at the
following one unless it names its own ``next_step_id``.
"""
from __future__ import annotations

import asyncio
import structlog
from abc import ABC, abstractmethod
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import RoutingFlowRow
from database.session import session_scope
from models.schemas import ChatAssignment, Contact, RoutingStepDef
from routing.pipeline import DEFAULT_MAX_ITERATIONS, RoutingPipeline
from routing.steps import RoutingDependencies, StepRegistry, step_registry

logger = structlog.get_logger()


DEFAULT_CHAIN: tuple[RoutingStepDef, ...] = (
    RoutingStepDef(id=1, kind="only_admin", next_step_id=2),
    RoutingStepDef(id=2, kind="loyalty", next_step_id=3),
    RoutingStepDef(id=3, kind="available_users", next_step_id=4),
    RoutingStepDef(id=4, kind="send_to_admin"),
)


def normalize_flow(
    raw_steps: list[dict[str, Any]], registry: StepRegistry = step_registry,
) -> list[RoutingStepDef]:
    """Turn an ordered list of raw step dicts into linked step definitions."""
    enabled = [raw for raw in raw_steps if raw.get("enabled", True) is not False]
    definitions = [dict(raw, id=raw.get("id") or index + 1) for index, raw in enumerate(enabled)]

    linked = []
    for position, raw in enumerate(definitions):
        next_id = raw.get("next_step_id")
        if next_id is None and not registry.is_final(raw["kind"]) and position + 1 < len(definitions):
            next_id = definitions[position + 1]["id"]
        linked.append(RoutingStepDef(
            id=raw["id"],
            kind=raw["kind"],
            config=raw.get("config") or {},
            next_step_id=next_id,
            fallback_step_id=raw.get("fallback_step_id"),
            description=raw.get("description", ""),
        ))
    return linked


# ──────────────────────────────────────────────────────────────
#  Flow sources
# ──────────────────────────────────────────────────────────────

class RoutingConfigSource(ABC):

    @abstractmethod
    async def load_steps(self, tenant: str, sector_id: int) -> Optional[list[dict[str, Any]]]:
        """Ordered raw step dicts for the scope, or None when nothing is configured."""
        ...


class StaticRoutingConfigSource(RoutingConfigSource):
    """Flows from settings: ``{"tenant:sector": [ {kind, config...}, ... ]}``."""

    def __init__(self, flows: Optional[dict[str, list[dict[str, Any]]]] = None):
        self._flows = dict(flows or {})

    def set_flow(self, tenant: str, sector_id: int, steps: list[dict[str, Any]]):
        self._flows[f"{tenant}:{sector_id}"] = steps

    async def load_steps(self, tenant, sector_id):
        return self._flows.get(f"{tenant}:{sector_id}")


class SqlRoutingConfigSource(RoutingConfigSource):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    async def load_steps(self, tenant, sector_id):
        async with session_scope(self._factory) as session:
            flow = (await session.execute(
                select(RoutingFlowRow).where(
                    RoutingFlowRow.tenant == tenant,
                    RoutingFlowRow.sector_id == sector_id,
                    RoutingFlowRow.enabled.is_(True),
                )
            )).scalar_one_or_none()
            if flow is None or not flow.steps:
                return None
            return [dict(s.to_dict(), enabled=s.enabled) for s in flow.steps]


# ──────────────────────────────────────────────────────────────
#  Cache
# ──────────────────────────────────────────────────────────────

class PipelineCache:
    """
    Builds pipelines on first use and keeps them per (tenant, sector).

    Usage:
        cache = PipelineCache(RoutingDependencies(store, directory))
        assignment = await cache.run("acme", 3, contact)
        cache.invalidate("acme", 3)      # after editing the flow
    """

    def __init__(
        self,
        deps: RoutingDependencies,
        source: Optional[RoutingConfigSource] = None,
        registry: StepRegistry = step_registry,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        self.deps = deps
        self.source = source or StaticRoutingConfigSource()
        self.registry = registry
        self.max_iterations = max_iterations
        self._pipelines: dict[tuple[str, int], RoutingPipeline] = {}
        self._lock = asyncio.Lock()

    async def build(self, tenant: str, sector_id: int) -> RoutingPipeline:
        key = (tenant, sector_id)
        pipeline = self._pipelines.get(key)
        if pipeline is not None:
            return pipeline

        async with self._lock:
            pipeline = self._pipelines.get(key)
            if pipeline is not None:
                return pipeline

            raw = await self.source.load_steps(tenant, sector_id)
            definitions = normalize_flow(raw, self.registry) if raw else []
            origin = "persisted"
            if not definitions:
                definitions = list(DEFAULT_CHAIN)
                origin = "default"

            pipeline = RoutingPipeline(tenant, sector_id, entry_step_id=definitions[0].id,
                                       max_iterations=self.max_iterations)
            for definition in definitions:
                pipeline.add_step(self.registry.create(definition, self.deps))

            self._pipelines[key] = pipeline
            logger.info("routing_pipeline_built", tenant=tenant, sector_id=sector_id,
                        origin=origin, steps=[d.kind for d in definitions])
            return pipeline

    async def run(self, tenant: str, sector_id: int, contact: Contact,
                  variables: Optional[dict[str, Any]] = None) -> ChatAssignment:
        pipeline = await self.build(tenant, sector_id)
        return await pipeline.run(contact, variables)

    def invalidate(self, tenant: str, sector_id: int) -> bool:
        return self._pipelines.pop((tenant, sector_id), None) is not None

    def clear(self):
        self._pipelines.clear()
