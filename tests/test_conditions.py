"""Tests for the condition evaluator used by routing ``condition`` and ``router`` steps."""
from models.schemas import RuleCondition
from utils.conditions import evaluate_condition, get_nested_value


ROUTING_DATA = {
    "tenant": "acme",
    "sector_id": 3,
    "contact": {"name": "Carla Souza", "address": "+5511999990000", "customer_id": None,
                "metadata": {"plan": "gold", "open_tickets": "4"}},
    "channel": "whatsapp",
}


class TestGetNestedValue:
    def test_top_level(self):
        assert get_nested_value(ROUTING_DATA, "tenant") == "acme"

    def test_contact_field(self):
        assert get_nested_value(ROUTING_DATA, "contact.name") == "Carla Souza"

    def test_deep_metadata(self):
        assert get_nested_value(ROUTING_DATA, "contact.metadata.plan") == "gold"

    def test_missing_path(self):
        assert get_nested_value(ROUTING_DATA, "contact.email") is None
        assert get_nested_value(ROUTING_DATA, "channel.provider") is None


class TestEvaluateCondition:
    def test_eq_and_neq(self):
        assert evaluate_condition(RuleCondition(field="channel", operator="eq", value="whatsapp"), ROUTING_DATA)
        assert not evaluate_condition(RuleCondition(field="channel", operator="neq", value="whatsapp"), ROUTING_DATA)

    def test_numeric_comparisons(self):
        assert evaluate_condition(RuleCondition(field="sector_id", operator="gt", value=2), ROUTING_DATA)
        assert evaluate_condition(RuleCondition(field="sector_id", operator="gte", value=3), ROUTING_DATA)
        assert evaluate_condition(RuleCondition(field="sector_id", operator="lte", value=3), ROUTING_DATA)
        assert not evaluate_condition(RuleCondition(field="sector_id", operator="lt", value=3), ROUTING_DATA)

    def test_numeric_string_is_coerced(self):
        cond = RuleCondition(field="contact.metadata.open_tickets", operator="gte", value=3)
        assert evaluate_condition(cond, ROUTING_DATA)

    def test_membership(self):
        assert evaluate_condition(
            RuleCondition(field="contact.metadata.plan", operator="in", value=["gold", "platinum"]), ROUTING_DATA,
        )
        assert evaluate_condition(
            RuleCondition(field="channel", operator="not_in", value=["email"]), ROUTING_DATA,
        )

    def test_text_operators(self):
        assert evaluate_condition(RuleCondition(field="contact.name", operator="contains", value="Souza"), ROUTING_DATA)
        assert evaluate_condition(RuleCondition(field="contact.address", operator="startswith", value="+55"), ROUTING_DATA)
        assert evaluate_condition(RuleCondition(field="contact.address", operator="regex", value=r"^\+55\d{11}$"),
                                  ROUTING_DATA)

    def test_presence(self):
        assert evaluate_condition(RuleCondition(field="contact.customer_id", operator="not_exists"), ROUTING_DATA)
        assert not evaluate_condition(RuleCondition(field="contact.customer_id", operator="exists"), ROUTING_DATA)
        assert evaluate_condition(RuleCondition(field="contact.name", operator="truthy"), ROUTING_DATA)

    def test_unknown_operator_never_matches(self):
        assert not evaluate_condition(RuleCondition(field="tenant", operator="like", value="ac%"), ROUTING_DATA)

    def test_uncomparable_values_do_not_raise(self):
        assert not evaluate_condition(RuleCondition(field="contact.name", operator="gt", value=10), ROUTING_DATA)
