"""
Tests for the routing pipeline: default chain, step kinds, configuration
errors, persisted flow normalization and the per-(tenant, sector) cache.
"""
import asyncio
import pytest

from models.schemas import (
    ChatAssignment, Contact, OperatorLevel, OperatorRef, OwnerKind, OwnerRef, RoutingStepDef, Sector,
)
from routing import (
    PipelineCache, PipelineConfigurationError, RoutingDependencies, RoutingPipeline,
    RoutingStep, StaticRoutingConfigSource, normalize_flow, step_registry,
)


@pytest.fixture
def deps(conversations, directory):
    return RoutingDependencies(conversations, directory)


@pytest.fixture
def source():
    return StaticRoutingConfigSource()


@pytest.fixture
def pipelines(deps, source):
    return PipelineCache(deps, source=source)


@pytest.fixture
def contact(conversations):
    return conversations.add_contact(Contact(tenant="acme", address="+5511999990000", name="Carla"))


def assigned_operator(assignment: ChatAssignment):
    assert assignment.final
    return assignment.owner.operator_id


class TestDefaultChain:

    @pytest.mark.asyncio
    async def test_least_loaded_online_operator_wins(self, pipelines, sales_sector, contact):
        assignment = await pipelines.run("acme", 1, contact)
        assert assigned_operator(assignment) == 11
        assert assignment.sector_id == 1

    @pytest.mark.asyncio
    async def test_tie_goes_to_lowest_id(self, pipelines, directory, sales_sector, contact):
        directory.set_open_conversations("acme", 10, 1)
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 10

    @pytest.mark.asyncio
    async def test_offline_operators_are_skipped(self, pipelines, directory, sales_sector, contact):
        directory.set_online("acme", 11, False)
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 10

    @pytest.mark.asyncio
    async def test_only_admin_contact_goes_to_supervision(self, pipelines, sales_sector, contact):
        contact.is_only_admin = True
        assignment = await pipelines.run("acme", 1, contact)
        assert assignment.owner.kind == OwnerKind.SUPERVISION

    @pytest.mark.asyncio
    async def test_loyalty_prefers_previous_operator(self, pipelines, conversations, sales_sector, contact):
        previous = await conversations.create_conversation(
            "acme", contact.id, "main", OwnerRef.operator(10), 1,
        )
        await conversations.close_conversation(previous.id, "done")
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 10

    @pytest.mark.asyncio
    async def test_loyalty_ignores_operator_of_another_sector(self, pipelines, conversations, directory,
                                                               sales_sector, contact):
        directory.add_operator(OperatorRef(id=20, tenant="acme", name="Caio", sector_id=2), online=True)
        await conversations.create_conversation("acme", contact.id, "main", OwnerRef.operator(20), 2)
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 11

    @pytest.mark.asyncio
    async def test_nobody_online_falls_back_to_default_operator(self, pipelines, directory, contact):
        directory.add_sector(Sector(id=1, tenant="acme", name="Vendas", default_operator_id=10))
        directory.add_operator(OperatorRef(id=10, tenant="acme", sector_id=1))
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 10

    @pytest.mark.asyncio
    async def test_nobody_online_and_no_default_goes_to_supervision(self, pipelines, directory, contact):
        directory.add_sector(Sector(id=1, tenant="acme", name="Vendas"))
        assignment = await pipelines.run("acme", 1, contact)
        assert assignment.owner.is_supervision
        assert assignment.sector_id == 1


class TestConfigurationErrors:

    @pytest.mark.asyncio
    async def test_non_final_step_without_next_is_an_error(self, deps, contact):
        pipeline = RoutingPipeline("acme", 1)
        pipeline.add_step(step_registry.create(RoutingStepDef(id=1, kind="available_users"), deps))
        with pytest.raises(PipelineConfigurationError, match="neither next step nor final"):
            await pipeline.run(contact)

    @pytest.mark.asyncio
    async def test_unknown_next_step_is_an_error(self, deps, contact):
        pipeline = RoutingPipeline("acme", 1)
        pipeline.add_step(step_registry.create(RoutingStepDef(id=1, kind="only_admin", next_step_id=9), deps))
        with pytest.raises(PipelineConfigurationError, match="unknown step id 9"):
            await pipeline.run(contact)

    @pytest.mark.asyncio
    async def test_cycle_is_detected(self, deps, contact):
        pipeline = RoutingPipeline("acme", 1, max_iterations=10)
        pipeline.add_step(step_registry.create(RoutingStepDef(id=1, kind="only_admin", next_step_id=2), deps))
        pipeline.add_step(step_registry.create(RoutingStepDef(id=2, kind="only_admin", next_step_id=1), deps))
        with pytest.raises(PipelineConfigurationError, match="cycle"):
            await pipeline.run(contact)

    def test_unknown_kind(self, deps):
        with pytest.raises(PipelineConfigurationError, match="unknown step kind"):
            step_registry.create(RoutingStepDef(id=1, kind="round_robin"), deps)

    def test_missing_required_config(self, deps):
        with pytest.raises(PipelineConfigurationError, match="missing config: routes"):
            step_registry.create(RoutingStepDef(id=1, kind="router", config={"field": "tenant"}), deps)

    def test_duplicate_step_id(self, deps):
        pipeline = RoutingPipeline("acme", 1)
        pipeline.add_step(step_registry.create(RoutingStepDef(id=1, kind="send_to_admin"), deps))
        with pytest.raises(PipelineConfigurationError):
            pipeline.add_step(step_registry.create(RoutingStepDef(id=1, kind="send_to_admin"), deps))

    @pytest.mark.asyncio
    async def test_failing_step_uses_fallback(self, contact):
        async def broken(ctx):
            raise RuntimeError("directory unavailable")

        async def fallback(ctx):
            return ChatAssignment.finalize(OwnerRef.supervision())

        pipeline = RoutingPipeline("acme", 4)
        pipeline.add_step(RoutingStep(1, "broken", broken, fallback_step_id=2))
        pipeline.add_step(RoutingStep(2, "fallback", fallback))
        assignment = await pipeline.run(contact)
        assert assignment.owner.is_supervision
        assert assignment.sector_id == 4

    @pytest.mark.asyncio
    async def test_failing_step_without_fallback_propagates(self, contact):
        async def broken(ctx):
            raise RuntimeError("directory unavailable")

        pipeline = RoutingPipeline("acme", 1)
        pipeline.add_step(RoutingStep(1, "broken", broken))
        with pytest.raises(RuntimeError):
            await pipeline.run(contact)


class TestPersistedFlows:

    def test_normalize_links_steps_in_order(self):
        steps = normalize_flow([
            {"kind": "only_admin"},
            {"kind": "loyalty", "enabled": False},
            {"kind": "available_users"},
            {"kind": "send_to_admin"},
        ])
        assert [(s.id, s.kind, s.next_step_id) for s in steps] == [
            (1, "only_admin", 2), (2, "available_users", 3), (3, "send_to_admin", None),
        ]

    @pytest.mark.asyncio
    async def test_disabled_first_step_is_skipped(self, pipelines, source, sales_sector, contact):
        source.set_flow("acme", 1, [
            {"kind": "send_to_admin", "enabled": False},
            {"kind": "available_users"},
            {"kind": "send_to_admin"},
        ])
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 11

    @pytest.mark.asyncio
    async def test_pipeline_enters_at_first_explicit_id(self, pipelines, source, sales_sector, contact):
        source.set_flow("acme", 1, [{"id": 5, "kind": "assign", "config": {"operator_id": 10}}])
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 10

    def test_normalize_keeps_explicit_links(self):
        steps = normalize_flow([
            {"id": 5, "kind": "only_admin", "next_step_id": 7},
            {"id": 7, "kind": "assign", "config": {"operator_id": 3}},
        ])
        assert steps[0].next_step_id == 7
        assert steps[1].config == {"operator_id": 3}

    @pytest.mark.asyncio
    async def test_persisted_flow_replaces_default(self, pipelines, source, sales_sector, contact):
        source.set_flow("acme", 1, [{"kind": "send_to_sector_user"}])
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 10

    @pytest.mark.asyncio
    async def test_send_to_sector_user_prefers_admin(self, pipelines, source, directory, sales_sector, contact):
        directory.add_operator(OperatorRef(id=12, tenant="acme", sector_id=1, level=OperatorLevel.ADMIN))
        source.set_flow("acme", 1, [{"kind": "send_to_sector_user"}])
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 12

    @pytest.mark.asyncio
    async def test_condition_branches(self, pipelines, source, sales_sector, conversations):
        source.set_flow("acme", 1, [
            {"id": 1, "kind": "condition",
             "config": {"field": "contact.name", "operator": "startswith", "value": "VIP",
                        "on_true": 2, "on_false": 3}},
            {"id": 2, "kind": "assign", "config": {"operator_id": 10, "wallet_id": 77}},
            {"id": 3, "kind": "assign"},
        ])
        vip = conversations.add_contact(Contact(tenant="acme", address="1", name="VIP Dora"))
        regular = conversations.add_contact(Contact(tenant="acme", address="2", name="Eva"))

        first = await pipelines.run("acme", 1, vip)
        assert assigned_operator(first) == 10
        assert first.wallet_id == 77
        assert (await pipelines.run("acme", 1, regular)).owner.is_supervision

    @pytest.mark.asyncio
    async def test_router_uses_variables(self, pipelines, source, sales_sector, contact):
        source.set_flow("acme", 1, [
            {"id": 1, "kind": "router", "config": {"field": "channel", "routes": {"email": 2}, "default": 3}},
            {"id": 2, "kind": "assign", "config": {"operator_id": 11}},
            {"id": 3, "kind": "assign", "config": {"operator_id": 10}},
        ])
        assert assigned_operator(await pipelines.run("acme", 1, contact, {"channel": "email"})) == 11
        assert assigned_operator(await pipelines.run("acme", 1, contact, {"channel": "sms"})) == 10


class TestPipelineCache:

    @pytest.mark.asyncio
    async def test_pipeline_is_built_once(self, pipelines):
        first = await pipelines.build("acme", 1)
        assert await pipelines.build("acme", 1) is first
        assert await pipelines.build("acme", 2) is not first

    @pytest.mark.asyncio
    async def test_invalidate_picks_up_new_flow(self, pipelines, source, sales_sector, contact):
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 11
        source.set_flow("acme", 1, [{"kind": "assign", "config": {"operator_id": 10}}])
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 11

        assert pipelines.invalidate("acme", 1) is True
        assert assigned_operator(await pipelines.run("acme", 1, contact)) == 10
        assert pipelines.invalidate("acme", 9) is False

    @pytest.mark.asyncio
    async def test_concurrent_runs_for_one_contact_share_a_result(self, contact):
        calls = 0
        gate = asyncio.Event()

        async def slow(ctx):
            nonlocal calls
            calls += 1
            await gate.wait()
            return ChatAssignment.finalize(OwnerRef.operator(10))

        pipeline = RoutingPipeline("acme", 1)
        pipeline.add_step(RoutingStep(1, "slow", slow))
        first = asyncio.ensure_future(pipeline.run(contact))
        second = asyncio.ensure_future(pipeline.run(contact))
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(first, second)

        assert calls == 1
        assert results[0] == results[1]
