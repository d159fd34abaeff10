"""
Routing step kinds and their registry.

Every kind is a factory ``(definition, deps) -> evaluate``; the returned
coroutine is a function of the routing context only. Adding a kind means
registering a factory, nothing in the pipeline changes.

Built-in kinds:
    only_admin           admin-only contacts go straight to supervision
    loyalty              previous operator, if still in this sector
    available_users      least-loaded online operator (ties: lowest id)
    send_to_admin        sector default operator or supervision (always final)
    send_to_sector_user  sector admin, else first operator, else supervision
    condition            branch on a field comparison
    router               branch on a field value
    assign               fixed owner (always final)
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Callable, Optional

from database.store_base import ConversationStore, OperatorDirectory
from models.schemas import (
    ChatAssignment, OperatorLevel, OwnerRef, RoutingStepDef, RuleCondition,
)
from routing.pipeline import PipelineConfigurationError, RoutingStep, StepEvaluator
from utils.conditions import evaluate_condition, get_nested_value

logger = structlog.get_logger()


@dataclass
class RoutingDependencies:
    """Collaborators the built-in steps read from."""
    conversations: ConversationStore
    directory: OperatorDirectory


StepFactory = Callable[[RoutingStepDef, RoutingDependencies], StepEvaluator]


@dataclass
class StepKind:
    name: str
    factory: StepFactory
    required_config: tuple[str, ...] = ()
    optional_config: tuple[str, ...] = ()
    final: bool = False
    description: str = ""


class StepRegistry:
    """Kind name → step factory."""

    def __init__(self):
        self._kinds: dict[str, StepKind] = {}

    def register(
        self,
        name: str,
        required_config: tuple[str, ...] = (),
        optional_config: tuple[str, ...] = (),
        final: bool = False,
        description: str = "",
    ):
        def decorator(factory: StepFactory) -> StepFactory:
            if name in self._kinds:
                logger.warning("routing_step_kind_replaced", kind=name)
            self._kinds[name] = StepKind(
                name, factory, tuple(required_config), tuple(optional_config), final, description,
            )
            return factory
        return decorator

    def has(self, name: str) -> bool:
        return name in self._kinds

    def is_final(self, name: str) -> bool:
        kind = self._kinds.get(name)
        return bool(kind and kind.final)

    def available_kinds(self) -> list[dict[str, Any]]:
        return [
            {
                "kind": k.name,
                "description": k.description,
                "required_config": list(k.required_config),
                "optional_config": list(k.optional_config),
                "final": k.final,
            }
            for k in self._kinds.values()
        ]

    def create(self, definition: RoutingStepDef, deps: RoutingDependencies) -> RoutingStep:
        kind = self._kinds.get(definition.kind)
        if kind is None:
            raise PipelineConfigurationError(
                f"unknown step kind {definition.kind!r}; available: {sorted(self._kinds)}"
            )
        missing = [key for key in kind.required_config if key not in definition.config]
        if missing:
            raise PipelineConfigurationError(
                f"step {definition.id} ({definition.kind}) missing config: {', '.join(missing)}"
            )
        return RoutingStep(
            id=definition.id,
            kind=definition.kind,
            evaluate=kind.factory(definition, deps),
            fallback_step_id=definition.fallback_step_id,
            description=definition.description or kind.description,
        )


step_registry = StepRegistry()


# ──────────────────────────────────────────────────────────────
#  Default chain kinds
# ──────────────────────────────────────────────────────────────

@step_registry.register("only_admin", description="Admin-only contacts go to supervision")
def only_admin_step(definition: RoutingStepDef, deps: RoutingDependencies) -> StepEvaluator:
    async def evaluate(ctx):
        if ctx.contact.is_only_admin:
            return ChatAssignment.finalize(OwnerRef.supervision(), sector_id=ctx.sector_id)
        return ChatAssignment.advance(definition.next_step_id)
    return evaluate


@step_registry.register(
    "loyalty",
    optional_config=("require_online",),
    description="Previous operator of the contact, if still in this sector",
)
def loyalty_step(definition: RoutingStepDef, deps: RoutingDependencies) -> StepEvaluator:
    require_online = bool(definition.config.get("require_online", False))

    async def evaluate(ctx):
        engagement = await deps.conversations.latest_engagement(ctx.tenant, ctx.contact.id)
        if engagement is None or not engagement.operator_id:
            return ChatAssignment.advance(definition.next_step_id)

        operator = await deps.directory.get_operator(ctx.tenant, engagement.operator_id)
        if operator is None or operator.sector_id != ctx.sector_id:
            return ChatAssignment.advance(definition.next_step_id)

        if require_online:
            online = await deps.directory.list_online_operators(ctx.tenant, ctx.sector_id)
            if operator.id not in {o.id for o in online}:
                return ChatAssignment.advance(definition.next_step_id)

        return ChatAssignment.finalize(OwnerRef.operator(operator.id), sector_id=ctx.sector_id)
    return evaluate


@step_registry.register("available_users", description="Least-loaded online operator of the sector")
def available_users_step(definition: RoutingStepDef, deps: RoutingDependencies) -> StepEvaluator:
    async def evaluate(ctx):
        online = await deps.directory.list_online_operators(ctx.tenant, ctx.sector_id)
        if not online:
            return ChatAssignment.advance(definition.next_step_id)

        loads = []
        for operator in online:
            count = await deps.directory.count_open_conversations(ctx.tenant, operator.id)
            loads.append((count, operator.id))
        count, operator_id = min(loads)
        logger.debug("routing_least_loaded", tenant=ctx.tenant, sector_id=ctx.sector_id,
                     operator_id=operator_id, open_conversations=count, candidates=len(loads))
        return ChatAssignment.finalize(OwnerRef.operator(operator_id), sector_id=ctx.sector_id)
    return evaluate


@step_registry.register(
    "send_to_admin",
    optional_config=("use_default_operator",),
    final=True,
    description="Sector default operator, otherwise supervision",
)
def send_to_admin_step(definition: RoutingStepDef, deps: RoutingDependencies) -> StepEvaluator:
    use_default = bool(definition.config.get("use_default_operator", True))

    async def evaluate(ctx):
        if use_default:
            sector = await deps.directory.get_sector(ctx.tenant, ctx.sector_id)
            if sector is not None and sector.default_operator_id is not None:
                return ChatAssignment.finalize(
                    OwnerRef.operator(sector.default_operator_id), sector_id=ctx.sector_id,
                )
        return ChatAssignment.finalize(OwnerRef.supervision(), sector_id=ctx.sector_id)
    return evaluate


@step_registry.register(
    "send_to_sector_user",
    final=True,
    description="Sector admin, else first operator of the sector, else supervision",
)
def send_to_sector_user_step(definition: RoutingStepDef, deps: RoutingDependencies) -> StepEvaluator:
    async def evaluate(ctx):
        operators = await deps.directory.list_operators(ctx.tenant, ctx.sector_id)
        chosen = next((o for o in operators if o.level == OperatorLevel.ADMIN), None)
        if chosen is None and operators:
            chosen = operators[0]
        if chosen is None:
            return ChatAssignment.finalize(OwnerRef.supervision(), sector_id=ctx.sector_id)
        return ChatAssignment.finalize(OwnerRef.operator(chosen.id), sector_id=ctx.sector_id)
    return evaluate


# ──────────────────────────────────────────────────────────────
#  Generic kinds
# ──────────────────────────────────────────────────────────────

@step_registry.register(
    "condition",
    required_config=("field", "operator"),
    optional_config=("value", "on_true", "on_false"),
    description="Branch on a field comparison",
)
def condition_step(definition: RoutingStepDef, deps: RoutingDependencies) -> StepEvaluator:
    config = definition.config
    condition = RuleCondition(field=config["field"], operator=config["operator"], value=config.get("value"))
    on_true: Optional[int] = config.get("on_true", definition.next_step_id)
    on_false: Optional[int] = config.get("on_false", definition.next_step_id)

    async def evaluate(ctx):
        passed = evaluate_condition(condition, ctx.as_data())
        return ChatAssignment.advance(on_true if passed else on_false, **{f"step_{definition.id}": passed})
    return evaluate


@step_registry.register(
    "router",
    required_config=("field", "routes"),
    optional_config=("default",),
    description="Jump to the step mapped to a field value",
)
def router_step(definition: RoutingStepDef, deps: RoutingDependencies) -> StepEvaluator:
    routes = {str(k): v for k, v in definition.config["routes"].items()}
    default: Optional[int] = definition.config.get("default", definition.next_step_id)
    field_path = definition.config["field"]

    async def evaluate(ctx):
        value = get_nested_value(ctx.as_data(), field_path)
        return ChatAssignment.advance(routes.get(str(value), default))
    return evaluate


@step_registry.register(
    "assign",
    optional_config=("operator_id", "operator_field", "wallet_id"),
    final=True,
    description="Fixed owner; supervision when no operator is given",
)
def assign_step(definition: RoutingStepDef, deps: RoutingDependencies) -> StepEvaluator:
    config = definition.config

    async def evaluate(ctx):
        operator_id = config.get("operator_id")
        if operator_id is None and config.get("operator_field"):
            operator_id = get_nested_value(ctx.as_data(), config["operator_field"])
        owner = OwnerRef.operator(int(operator_id)) if operator_id is not None else OwnerRef.supervision()
        return ChatAssignment.finalize(owner, sector_id=ctx.sector_id, wallet_id=config.get("wallet_id"))
    return evaluate
