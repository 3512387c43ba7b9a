"""Tests for structural graph validation."""

import random

import pytest

from flowrunner.core.exceptions import GraphValidationError
from flowrunner.core.graph_validator import GraphValidator, find_reachable

from conftest import edge, make_definition


@pytest.fixture
def validator():
    return GraphValidator()


def trigger(node_id="t1"):
    return {"id": node_id, "type": "webhookTrigger"}


def transform(node_id, label=None):
    node = {"id": node_id, "type": "transform", "config": {"mode": "expression", "expression": "1 + 1"}}
    if label:
        node["label"] = label
    return node


def random_dag(rng, size):
    """Trigger plus ``size`` transforms; edges only run from lower to higher index."""
    ids = [f"n{i}" for i in range(size)]
    nodes = [trigger()] + [transform(node_id) for node_id in ids]
    edges = [edge("t1", ids[0])]
    for index in range(1, size):
        # every node gets at least one parent so all are reachable
        edges.append(edge(ids[rng.randrange(index)], ids[index]))
        for parent in range(index):
            if rng.random() < 0.2:
                edges.append(edge(ids[parent], ids[index]))
    return nodes, edges


class TestGraphValidator:
    """Test cases for GraphValidator."""

    def test_empty_workflow(self, validator):
        """An empty node set is an error."""
        result = validator.validate(make_definition([], []))
        assert not result.is_valid
        assert result.error_messages() == ["Workflow is empty. Add at least one node."]

    def test_missing_trigger(self, validator):
        """A graph without a trigger cannot run."""
        result = validator.validate(make_definition([transform("a")], []))
        assert "Workflow must have at least one trigger node." in result.error_messages()

    def test_multiple_triggers_warn(self, validator):
        """Only the first trigger is honored; the rest produce a warning."""
        nodes = [trigger("t1"), trigger("t2"), transform("a")]
        result = validator.validate(make_definition(nodes, [edge("t1", "a")]))
        assert result.is_valid
        assert "Multiple triggers detected. Only the first will be used." in result.warning_messages()

    def test_trigger_without_outgoing_edge(self, validator):
        """The active trigger must lead somewhere."""
        result = validator.validate(make_definition([trigger()], []))
        assert "Trigger 'webhookTrigger' must be connected to at least one node." in result.error_messages()

    def test_disconnected_node_warns(self, validator):
        """A node touched by no edge is a dead-node warning, not an error."""
        nodes = [trigger(), transform("a"), transform("b", label="Orphan")]
        result = validator.validate(make_definition(nodes, [edge("t1", "a")]))
        assert result.is_valid
        assert "Node 'Orphan' is not connected to the workflow." in result.warning_messages()

    def test_unknown_edge_reference(self, validator):
        """Edges must reference existing nodes."""
        nodes = [trigger(), transform("a")]
        result = validator.validate(make_definition(nodes, [edge("t1", "a"), edge("a", "ghost")]))
        assert "Edge a -> ghost references unknown node 'ghost'." in result.error_messages()

    def test_duplicate_node_ids(self, validator):
        """Node ids must be unique."""
        nodes = [trigger(), transform("a"), transform("a")]
        result = validator.validate(make_definition(nodes, [edge("t1", "a")]))
        assert "Duplicate node id 'a'." in result.error_messages()

    def test_condition_without_outgoing_edges(self, validator):
        """A condition that leads nowhere is an error."""
        nodes = [trigger(), {"id": "c", "type": "condition", "label": "Check", "config": {"expression": "1 > 0"}}]
        result = validator.validate(make_definition(nodes, [edge("t1", "c")]))
        assert "Condition 'Check' must have at least one outgoing connection." in result.error_messages()

    def test_condition_missing_one_branch_warns(self, validator):
        """Missing exactly one branch label ends the flow there; it is only a warning."""
        nodes = [
            trigger(),
            {"id": "c", "type": "condition", "label": "Check", "config": {"expression": "1 > 0"}},
            transform("a"),
        ]
        result = validator.validate(make_definition(nodes, [edge("t1", "c"), edge("c", "a", "true")]))
        assert result.is_valid
        assert "Condition 'Check' has no 'false' branch; that path ends the flow." in result.warning_messages()

    def test_condition_duplicate_branch(self, validator):
        """At most one edge per branch label."""
        nodes = [
            trigger(),
            {"id": "c", "type": "condition", "label": "Check", "config": {"expression": "1 > 0"}},
            transform("a"),
            transform("b"),
        ]
        edges = [edge("t1", "c"), edge("c", "a", "true"), edge("c", "b", "true")]
        result = validator.validate(make_definition(nodes, edges))
        assert "Condition 'Check' has more than one 'true' branch." in result.error_messages()

    def test_self_loop_is_cycle(self, validator):
        """A self-loop is the smallest cycle."""
        nodes = [trigger(), transform("a", label="Loop")]
        result = validator.validate(make_definition(nodes, [edge("t1", "a"), edge("a", "a")]))
        assert "Cycle detected at node 'Loop'." in result.error_messages()

    def test_random_dags_have_no_cycle_errors(self, validator):
        """No false positives over generated DAGs."""
        rng = random.Random(1234)
        for _ in range(50):
            nodes, edges = random_dag(rng, rng.randint(2, 12))
            result = validator.validate(make_definition(nodes, edges))
            assert not any("Cycle detected" in message for message in result.error_messages())
            assert result.is_valid

    def test_injected_back_edge_is_detected(self, validator):
        """Adding any back-edge to a generated DAG produces a cycle error."""
        rng = random.Random(4321)
        for _ in range(50):
            size = rng.randint(2, 12)
            nodes, edges = random_dag(rng, size)
            later = rng.randrange(1, size)
            earlier = rng.randrange(later)
            # close a loop between two nodes on the same path
            edges.append(edge(f"n{earlier}", f"n{later}"))
            edges.append(edge(f"n{later}", f"n{earlier}"))
            result = validator.validate(make_definition(nodes, edges))
            assert any("Cycle detected" in message for message in result.error_messages())

    def test_long_chain_validates(self, validator):
        """Deep linear graphs are checked without exhausting the call stack."""
        ids = [f"n{i}" for i in range(1500)]
        nodes = [trigger()] + [transform(node_id) for node_id in ids]
        edges = [edge("t1", ids[0])] + [edge(ids[i], ids[i + 1]) for i in range(len(ids) - 1)]

        result = validator.validate(make_definition(nodes, edges))

        assert result.is_valid

    def test_long_chain_with_back_edge(self, validator):
        """A back-edge at the end of a deep chain is still found."""
        ids = [f"n{i}" for i in range(1500)]
        nodes = [trigger()] + [transform(node_id) for node_id in ids]
        nodes[1]["label"] = "Head"
        edges = [edge("t1", ids[0])] + [edge(ids[i], ids[i + 1]) for i in range(len(ids) - 1)]
        edges.append(edge(ids[-1], ids[0]))

        result = validator.validate(make_definition(nodes, edges))

        assert "Cycle detected at node 'Head'." in result.error_messages()

    def test_edge_into_trigger_is_not_a_cycle(self, validator):
        """Edges pointing back at the active trigger are ignored like at run time."""
        nodes = [trigger(), transform("a")]
        result = validator.validate(make_definition(nodes, [edge("t1", "a"), edge("a", "t1")]))

        assert not any("Cycle detected" in message for message in result.error_messages())
        assert result.is_valid

    def test_required_fields_per_type(self, validator):
        """Each node type enumerates the config fields it cannot run without."""
        nodes = [
            trigger(),
            {"id": "h", "type": "httpRequest", "label": "Fetch", "config": {"url": "  "}},
            {"id": "d", "type": "databaseQuery", "label": "Query", "config": {}},
            {"id": "m", "type": "sendTelegram", "label": "Notify", "config": {"chatId": "42"}},
        ]
        edges = [edge("t1", "h"), edge("h", "d"), edge("d", "m")]
        messages = validator.validate(make_definition(nodes, edges)).error_messages()
        assert "httpRequest node 'Fetch' requires 'url'." in messages
        assert "databaseQuery node 'Query' requires 'query'." in messages
        assert "sendTelegram node 'Notify' requires 'message'." in messages

    def test_invalid_cron_is_error(self, validator):
        """A schedule trigger must carry a parseable cron expression."""
        nodes = [
            {"id": "s", "type": "scheduleTrigger", "label": "Nightly", "config": {"cron": "not-a-cron"}},
            transform("a"),
        ]
        result = validator.validate(make_definition(nodes, [edge("s", "a")]))
        assert not result.is_valid
        assert result.errors[0].node_id == "s"
        assert result.errors[0].message.startswith("scheduleTrigger node 'Nightly':")

    def test_valid_cron_passes(self, validator):
        """Five- and six-field expressions are both accepted."""
        for cron in ("*/5 * * * *", "0 30 9 * * mon-fri"):
            nodes = [{"id": "s", "type": "scheduleTrigger", "config": {"cron": cron}}, transform("a")]
            assert validator.validate(make_definition(nodes, [edge("s", "a")])).is_valid

    def test_validation_is_deterministic(self, validator):
        """The same definition always yields the same result."""
        nodes = [trigger(), transform("a"), transform("b")]
        definition = make_definition(nodes, [edge("t1", "a")])
        assert validator.validate(definition) == validator.validate(definition)

    def test_ensure_valid_raises(self, validator):
        """ensure_valid turns errors into a GraphValidationError."""
        with pytest.raises(GraphValidationError) as exc_info:
            validator.ensure_valid(make_definition([], []), workflow_id="wf-1")
        assert exc_info.value.validation_errors == ["Workflow is empty. Add at least one node."]


class TestFindReachable:
    """Test cases for reachability."""

    def test_reachable_follows_edges(self):
        """Reachability is transitive and includes the start node."""
        definition = make_definition(
            [trigger(), transform("a"), transform("b"), transform("c")],
            [edge("t1", "a"), edge("a", "b")]
        )
        assert find_reachable("t1", definition.edges) == {"t1", "a", "b"}
