"""
Tests for the bot session engine, its write-behind cache and the four dialogs.
"""
import asyncio
import json
import pytest

from bots import (
    BotDependencies, BotSessionEngine, BotSessionError, DialogOutcome, DialogRegistry,
    WriteBehindSessionCache, default_registry, parse_option, parse_rating,
)
from bots import customer_linking, satisfaction
from bots.choose_operator import CHOSEN_MSG, NEXT_AVAILABLE_MSG
from bots.choose_sector import INVALID_OPTION_MSG, REDIRECT_MSG
from config.settings import BotConfig
from database.store_file import InMemorySessionSnapshotStore, JsonSessionSnapshotStore
from models.schemas import Contact, DialogKind, SatisfactionData, Sector

KEY = "acme:chat:c1"
QUESTIONS = BotConfig().satisfaction_questions


@pytest.fixture
def engine(bot_engine, actions):
    bot_engine.attach(actions)
    return bot_engine


async def start_survey(engine, step=None, question_index=0, emit=False, **kwargs):
    return await engine.start(
        KEY, DialogKind.SATISFACTION, tenant="acme", conversation_id="c1",
        data=SatisfactionData(question_index=question_index, operator_id=10),
        step=step, emit=emit, **kwargs,
    )


class TestInputParsing:

    def test_rating_in_free_text(self):
        assert parse_rating("nota 8!") == 8
        assert parse_rating("10") == 10
        assert parse_rating("dou 0") is None
        assert parse_rating("abc") is None

    def test_option_bounds(self):
        assert parse_option("2", 3) == 2
        assert parse_option("opção 3.", 3) == 3
        assert parse_option("4", 3) is None
        assert parse_option("", 3) is None


class TestSatisfactionSurvey:

    @pytest.mark.asyncio
    async def test_start_asks_initial_rating(self, engine, actions):
        await start_survey(engine, emit=True)
        assert actions.texts() == [satisfaction.INITIAL_QUESTION]
        assert engine.get(KEY).step == satisfaction.AWAITING_INITIAL_RATING

    @pytest.mark.asyncio
    async def test_valid_answer_moves_to_next_question(self, engine, actions, surveys):
        await start_survey(engine, step=satisfaction.AWAITING_QUESTION, question_index=2)

        await engine.advance(KEY, "7")
        session = engine.get(KEY)
        assert session.step == satisfaction.AWAITING_QUESTION
        assert session.data.question_index == 3
        assert session.data.answers == [7]
        assert actions.texts() == [QUESTIONS[3]]
        assert surveys.answers == [{
            "tenant": "acme", "conversation_id": "c1", "question": 3, "rating": 7, "operator_id": 10,
        }]

    @pytest.mark.asyncio
    async def test_invalid_answer_only_refreshes_activity(self, engine, actions, clock, surveys):
        await start_survey(engine, step=satisfaction.AWAITING_QUESTION, question_index=2)
        before = engine.get(KEY)

        clock.advance(5)
        outcome = await engine.advance(KEY, "abc")
        after = engine.get(KEY)

        assert outcome.valid is False
        assert after.model_dump(exclude={"last_activity_at"}) == before.model_dump(exclude={"last_activity_at"})
        assert after.last_activity_at == clock()
        assert actions.texts() == [satisfaction.INVALID_RATING_MSG]
        assert surveys.answers == []

    @pytest.mark.asyncio
    async def test_not_applicable_answer_on_second_question(self, engine, actions):
        await start_survey(engine, step=satisfaction.AWAITING_QUESTION, question_index=1)
        await engine.advance(KEY, "99")
        assert engine.get(KEY).data.answers == [99]

    @pytest.mark.asyncio
    async def test_invalid_answer_on_second_question_mentions_99(self, engine, actions):
        await start_survey(engine, step=satisfaction.AWAITING_QUESTION, question_index=1)
        await engine.advance(KEY, "talvez")
        assert actions.texts() == [satisfaction.INVALID_RATING_NA_MSG]

    @pytest.mark.asyncio
    async def test_full_survey_finishes_conversation(self, engine, actions, surveys):
        await start_survey(engine, emit=True)
        for answer in ("8", "9", "99", "7", "10"):
            await engine.advance(KEY, answer)

        assert engine.get(KEY) is None
        assert [a["question"] for a in surveys.answers] == [0, 1, 2, 3, 4]
        assert actions.texts()[-1] == satisfaction.THANKS_MSG
        assert actions.named("add_system_message") == [("add_system_message", "c1", satisfaction.FINISH_MSG)]
        assert actions.named("finish_conversation") == [("finish_conversation", "c1", satisfaction.FINISH_MSG)]

    @pytest.mark.asyncio
    async def test_message_after_finish_is_ignored(self, engine, actions):
        await start_survey(engine, step=satisfaction.AWAITING_QUESTION, question_index=3)
        await engine.advance(KEY, "9")
        calls = len(actions.calls)

        assert await engine.advance(KEY, "10") is None
        assert engine.is_tombstoned(KEY)
        assert len(actions.calls) == calls

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_survey(self, engine, actions, surveys):
        async def broken(*args, **kwargs):
            raise ConnectionError("sink down")
        surveys.record_answer = broken

        await start_survey(engine, step=satisfaction.AWAITING_QUESTION, question_index=0)
        await engine.advance(KEY, "6")
        assert engine.get(KEY).data.question_index == 1

    @pytest.mark.asyncio
    async def test_closed_conversation_drops_session(self, engine, actions):
        await start_survey(engine, step=satisfaction.AWAITING_QUESTION)
        actions.closed.add("c1")
        assert await engine.advance(KEY, "7") is None
        assert engine.get(KEY) is None


class TestEngineLifecycle:

    @pytest.mark.asyncio
    async def test_reset_returns_to_first_step(self, engine):
        await start_survey(engine, step=satisfaction.AWAITING_QUESTION, question_index=2)
        reset = await engine.reset(KEY)
        assert reset.step == satisfaction.AWAITING_INITIAL_RATING
        assert reset.data == SatisfactionData()
        assert await engine.reset("acme:chat:none") is None

    @pytest.mark.asyncio
    async def test_start_clears_tombstone(self, engine):
        await start_survey(engine)
        await engine.discard(KEY)
        assert engine.is_tombstoned(KEY)
        await start_survey(engine)
        assert not engine.is_tombstoned(KEY)
        assert engine.get(KEY) is not None

    @pytest.mark.asyncio
    async def test_advance_creates_session_lazily(self, engine, actions, directory):
        directory.add_sector(Sector(id=1, tenant="acme", name="Vendas"))
        directory.add_sector(Sector(id=2, tenant="acme", name="Suporte"))
        await engine.advance(KEY, "oi", kind=DialogKind.CHOOSE_SECTOR, tenant="acme", conversation_id="c1")
        assert engine.get(KEY).step == 1
        assert "1 - Vendas" in actions.texts()[0]

    @pytest.mark.asyncio
    async def test_advance_without_session_or_kind_is_ignored(self, engine):
        assert await engine.advance(KEY, "oi") is None

    @pytest.mark.asyncio
    async def test_dialog_moving_backwards_raises(self, bot_deps, clock, actions):
        class Backwards:
            kind = DialogKind.CHOOSE_OPERATOR
            initial_step = 1
            terminal_step = 5

            def new_data(self):
                return default_registry().require(DialogKind.CHOOSE_OPERATOR).new_data()

            def timeout_ms(self, config):
                return 0

            async def start(self, session, deps):
                return DialogOutcome(session)

            async def advance(self, session, text, deps):
                return DialogOutcome(session.model_copy(update={"step": 0}))

            async def should_activate(self, tenant, contact, deps):
                return False

            async def on_timeout(self, session, deps):
                return DialogOutcome(session)

        cache = WriteBehindSessionCache(InMemorySessionSnapshotStore(), debounce_ms=0)
        engine = BotSessionEngine(DialogRegistry([Backwards()]), cache, bot_deps, actions, clock=clock)
        await engine.start(KEY, DialogKind.CHOOSE_OPERATOR, tenant="acme", conversation_id="c1")
        with pytest.raises(BotSessionError):
            await engine.advance(KEY, "x")
        await cache.close()

    def test_registry_lookup(self):
        registry = default_registry()
        assert registry.kinds() == list(DialogKind)
        assert registry.get(99) is None
        with pytest.raises(BotSessionError):
            DialogRegistry().require(DialogKind.SATISFACTION)


class TestWatchdog:

    @pytest.mark.asyncio
    async def test_idle_session_is_escalated_once(self, engine, actions, clock):
        await start_survey(engine, step=satisfaction.AWAITING_QUESTION)
        clock.advance(30)
        assert await engine.tick() == 0

        clock.advance(31)
        assert await engine.tick() == 1
        assert await engine.tick() == 0
        assert engine.get(KEY) is None
        assert actions.named("send_text") == [("send_text", "c1", satisfaction.TIMEOUT_MSG, 10)]
        assert actions.named("finish_conversation") == [("finish_conversation", "c1", satisfaction.TIMEOUT_MSG)]

    @pytest.mark.asyncio
    async def test_session_without_timeout_never_escalates(self, engine, directory, clock):
        directory.add_sector(Sector(id=1, tenant="acme", name="Vendas"))
        await engine.start(KEY, DialogKind.CHOOSE_SECTOR, tenant="acme", conversation_id="c1", emit=False)
        clock.advance(days=2)
        assert await engine.tick() == 0
        assert engine.get(KEY) is not None

    @pytest.mark.asyncio
    async def test_closed_conversation_is_dropped_without_side_effects(self, engine, actions, clock):
        await start_survey(engine, step=satisfaction.AWAITING_QUESTION)
        actions.closed.add("c1")
        clock.advance(61)
        assert await engine.tick() == 0
        assert engine.get(KEY) is None
        assert actions.calls == []


class TestSessionPersistence:

    @pytest.mark.asyncio
    async def test_sessions_survive_restart(self, tmp_path, bot_deps, clock):
        path = tmp_path / "sessions" / "bots.json"
        cache = WriteBehindSessionCache(JsonSessionSnapshotStore(str(path)), debounce_ms=0)
        engine = BotSessionEngine(default_registry(), cache, bot_deps, clock=clock)
        await start_survey(engine, step=satisfaction.AWAITING_QUESTION, question_index=2)
        await cache.close()

        assert json.loads(path.read_text())["sessions"][0]["conversation_key"] == KEY

        restored = WriteBehindSessionCache(JsonSessionSnapshotStore(str(path)), debounce_ms=0)
        assert await restored.load() == 1
        session = restored.get(KEY)
        assert session.dialog_kind == DialogKind.SATISFACTION
        assert session.data.question_index == 2
        assert session.data.operator_id == 10
        await restored.close()

    @pytest.mark.asyncio
    async def test_invalid_snapshot_entries_are_skipped(self):
        store = InMemorySessionSnapshotStore([
            {"conversation_key": "broken"},
            {"conversation_key": KEY, "dialog_kind": 2, "tenant": "acme", "conversation_id": "c1",
             "step": 1, "data": {"kind": "satisfaction", "question_index": 1}},
        ])
        cache = WriteBehindSessionCache(store)
        assert await cache.load() == 1
        assert isinstance(cache.get(KEY).data, SatisfactionData)
        await cache.close()

    @pytest.mark.asyncio
    async def test_mutations_within_window_share_one_write(self, bot_deps, clock):
        store = InMemorySessionSnapshotStore()
        cache = WriteBehindSessionCache(store, debounce_ms=50)
        engine = BotSessionEngine(default_registry(), cache, bot_deps, clock=clock)
        await start_survey(engine)
        await engine.reset(KEY)
        await engine.discard(KEY)

        await asyncio.sleep(0.2)
        assert store.saves == 1
        assert store.sessions == []
        await cache.close()


class TestChooseSector:

    @pytest.fixture
    def sectors(self, directory):
        directory.add_sector(Sector(id=1, tenant="acme", name="Vendas"))
        directory.add_sector(Sector(id=2, tenant="acme", name="Suporte"))

    @pytest.mark.asyncio
    async def test_menu_and_choice(self, engine, actions, directory, sectors):
        await engine.start(KEY, DialogKind.CHOOSE_SECTOR, tenant="acme", conversation_id="c1")
        assert "1 - Vendas\n2 - Suporte" in actions.texts()[0]

        directory.add_sector(Sector(id=0, tenant="acme", name="Financeiro"))
        await engine.advance(KEY, "3")
        await engine.advance(KEY, "2")

        assert actions.texts()[1:] == [INVALID_OPTION_MSG, REDIRECT_MSG.format(name="Suporte")]
        assert actions.named("transfer_to_sector") == [("transfer_to_sector", "c1", 2)]

    @pytest.mark.asyncio
    async def test_should_activate_needs_more_than_one_sector(self, bot_deps, directory):
        dialog = default_registry().require(DialogKind.CHOOSE_SECTOR)
        contact = Contact(tenant="acme", address="1")
        directory.add_sector(Sector(id=1, tenant="acme", name="Vendas"))
        assert await dialog.should_activate("acme", contact, bot_deps) is False
        directory.add_sector(Sector(id=2, tenant="acme", name="Suporte"))
        assert await dialog.should_activate("acme", contact, bot_deps) is True


class TestCustomerLinking:

    @pytest.fixture
    def contact(self, conversations):
        return conversations.add_contact(Contact(tenant="acme", address="+5511988887777"))

    async def start(self, engine, contact):
        await engine.start(KEY, DialogKind.CUSTOMER_LINKING, tenant="acme",
                           conversation_id="c1", contact_id=contact.id)

    def test_document_normalization(self):
        assert customer_linking.normalize_document("11.222.333/0001-81") == "11222333000181"
        assert customer_linking.normalize_document("11111111111111") is None
        assert customer_linking.normalize_document("123") is None

    @pytest.mark.asyncio
    async def test_found_customer_is_linked(self, engine, actions, customers, conversations, contact):
        customers.add_customer("acme", "11222333000181", "cust-9")
        await self.start(engine, contact)
        await engine.advance(KEY, "11.222.333/0001-81")

        assert (await conversations.get_contact(contact.id)).customer_id == "cust-9"
        assert actions.texts() == [
            customer_linking.ASK_DOCUMENT_MSG,
            customer_linking.CUSTOMER_FOUND_MSG,
            customer_linking.CUSTOMER_LINKED_MSG,
        ]
        assert actions.named("hand_off_to_human") == [("hand_off_to_human", "c1", "Cliente vinculado")]

    @pytest.mark.asyncio
    async def test_unknown_customer_goes_to_human(self, engine, actions, contact):
        await self.start(engine, contact)
        await engine.advance(KEY, "00000000000")
        await engine.advance(KEY, "11222333000181")

        assert actions.texts()[1:] == [
            customer_linking.INVALID_DOCUMENT_MSG, customer_linking.CUSTOMER_NOT_FOUND_MSG,
        ]
        assert actions.named("add_system_message") == [
            ("add_system_message", "c1", customer_linking.HAND_OFF_SYSTEM_MSG),
        ]
        assert len(actions.named("hand_off_to_human")) == 1

    @pytest.mark.asyncio
    async def test_activation_follows_config(self, conversations, directory, customers):
        dialog = default_registry().require(DialogKind.CUSTOMER_LINKING)
        enabled = BotDependencies(conversations, directory, customers,
                                  config_for=lambda t: BotConfig(customer_linking_enabled=True))
        disabled = BotDependencies(conversations, directory, customers)

        contact = Contact(tenant="acme", address="1")
        assert await dialog.should_activate("acme", contact, enabled) is True
        assert await dialog.should_activate("acme", contact, disabled) is False
        linked = contact.model_copy(update={"customer_id": "cust-1"})
        assert await dialog.should_activate("acme", linked, enabled) is False


class TestChooseOperator:

    async def start(self, engine):
        await engine.start(KEY, DialogKind.CHOOSE_OPERATOR, tenant="acme",
                           conversation_id="c1", sector_id=1)

    @pytest.mark.asyncio
    async def test_menu_lists_operators_and_next_available(self, engine, actions, sales_sector):
        await self.start(engine)
        assert "1 - Ana\n2 - Bia\n3 - Nova vendedora" in actions.texts()[0]

    @pytest.mark.asyncio
    async def test_choice_by_name(self, engine, actions, sales_sector):
        await self.start(engine)
        await engine.advance(KEY, "Quero falar com a Bia")
        assert actions.texts()[-1] == CHOSEN_MSG.format(name="Bia")
        assert actions.named("transfer_to_operator") == [("transfer_to_operator", "c1", 11)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer", ["Nova vendedora", "3"])
    async def test_next_available_hands_off(self, engine, actions, sales_sector, answer):
        await self.start(engine)
        await engine.advance(KEY, answer)
        assert actions.texts()[-1] == NEXT_AVAILABLE_MSG
        assert len(actions.named("hand_off_to_human")) == 1

    @pytest.mark.asyncio
    async def test_unrecognized_answer_reprompts(self, engine, actions, sales_sector):
        await self.start(engine)
        outcome = await engine.advance(KEY, "não sei")
        assert outcome.valid is False
        assert engine.get(KEY).step == 1
