"""
Tests for step graph validation and resolution.
"""

import pytest

from production_flow_orchestrator.core.config import parse_step_catalog
from production_flow_orchestrator.core.exceptions import ConfigurationError, StepNotFoundError
from production_flow_orchestrator.models.steps import StepGraph
from production_flow_orchestrator.services.step_resolver import (
    StepGraphResolver, StepOutcome, NextStep, Restart, BlockedFailure, Terminal, normalize_recorded_value
)


def test_first_step_is_lowest_sort_order(resolver, graphs):
    assert resolver.first_step(graphs["SENSOR"]) == NextStep(1)


def test_pass_on_unconditioned_step_advances_to_next_definition(resolver, graphs):
    assert resolver.resolve_next(graphs["SENSOR"], 1, StepOutcome.PASS) == NextStep(2)


def test_conditional_step_skipped_when_value_differs(resolver, graphs):
    decision = resolver.resolve_next(graphs["SENSOR"], 2, StepOutcome.PASS, {2: "B"})
    assert decision == NextStep(4, skipped=(3,))


def test_conditional_step_taken_when_value_matches(resolver, graphs):
    decision = resolver.resolve_next(graphs["SENSOR"], 2, StepOutcome.PASS, {2: "A"})
    assert decision == NextStep(3)


def test_conditional_step_skipped_when_nothing_recorded(resolver, graphs):
    decision = resolver.resolve_next(graphs["SENSOR"], 3, StepOutcome.PASS, {})
    assert decision == NextStep(5, skipped=(4,))


def test_blocking_failure_without_restart(resolver, graphs):
    assert resolver.resolve_next(graphs["SENSOR"], 5, StepOutcome.FAIL) == BlockedFailure(5)


def test_blocking_failure_with_restart(resolver, graphs):
    assert resolver.resolve_next(graphs["MLA"], 3, StepOutcome.FAIL) == Restart(2, failed_step=3)


def test_failure_on_non_blocking_step_moves_on(resolver, graphs):
    assert resolver.resolve_next(graphs["SENSOR"], 1, StepOutcome.FAIL) == NextStep(2)


def test_last_step_is_terminal(resolver, graphs):
    assert resolver.resolve_next(graphs["SENSOR"], 6, StepOutcome.PASS) == Terminal()


def test_trailing_conditional_steps_are_reported_as_skipped():
    graph = StepGraph.from_dicts("HMI", [
        {"step_number": 1, "title": "Test"},
        {"step_number": 2, "title": "Rework", "conditional_on_step": 1, "conditional_value": "failed"},
    ])
    resolver = StepGraphResolver({"HMI": graph})
    assert resolver.resolve_next(graph, 1, StepOutcome.PASS, {1: "passed"}) == Terminal(skipped=(2,))


def test_unknown_step_raises(resolver, graphs):
    with pytest.raises(StepNotFoundError):
        resolver.resolve_next(graphs["SENSOR"], 99, StepOutcome.PASS)


def test_missing_graph_raises(resolver):
    with pytest.raises(ConfigurationError):
        resolver.get_graph("UNKNOWN")


def test_sort_order_wins_over_step_number():
    graph = StepGraph.from_dicts("X", [
        {"step_number": 1, "sort_order": 20},
        {"step_number": 2, "sort_order": 10},
    ])
    assert graph.step_numbers == [2, 1]
    assert StepGraphResolver().first_step(graph) == NextStep(2)


@pytest.mark.parametrize("value,expected", [
    (True, "true"),
    (False, "false"),
    (2.0, "2"),
    (2.5, "2.5"),
    (" A ", "A"),
    (None, None),
])
def test_normalize_recorded_value(value, expected):
    assert normalize_recorded_value(value) == expected


class TestGraphValidation:
    """Catalogue errors are rejected when the graph is built."""

    def test_empty_graph(self):
        with pytest.raises(ConfigurationError):
            StepGraph.from_dicts("X", [])

    def test_duplicate_step_number(self):
        with pytest.raises(ConfigurationError, match="duplicate"):
            StepGraph.from_dicts("X", [{"step_number": 1}, {"step_number": 1, "sort_order": 2}])

    def test_conditional_on_unknown_step(self):
        with pytest.raises(ConfigurationError, match="unknown step"):
            StepGraph.from_dicts("X", [
                {"step_number": 1},
                {"step_number": 2, "conditional_on_step": 7, "conditional_value": "A"},
            ])

    def test_conditional_on_later_step(self):
        with pytest.raises(ConfigurationError, match="does not precede"):
            StepGraph.from_dicts("X", [
                {"step_number": 1, "conditional_on_step": 2, "conditional_value": "A"},
                {"step_number": 2},
            ])

    def test_conditional_without_value(self):
        with pytest.raises(ConfigurationError, match="conditional_value"):
            StepGraph.from_dicts("X", [
                {"step_number": 1},
                {"step_number": 2, "conditional_on_step": 1},
            ])

    def test_restart_from_later_step(self):
        with pytest.raises(ConfigurationError, match="later step"):
            StepGraph.from_dicts("X", [
                {"step_number": 1, "blocks_on_failure": True, "restart_from_step": 2},
                {"step_number": 2},
            ])

    def test_malformed_barcode_pattern(self):
        with pytest.raises(ConfigurationError, match="barcode_pattern"):
            parse_step_catalog({"P": [
                {"step_number": 1, "validation_rules": {"barcode_pattern": "[A-Z"}},
            ]})

    def test_barcode_pattern_is_compiled_at_load(self):
        graph = StepGraph.from_dicts("X", [
            {"step_number": 1, "validation_rules": {"barcode_pattern": r"H-\d{6}"}},
        ])
        assert graph.get(1).validation_rules.barcode_regex.fullmatch("H-000123")

    def test_restart_read_from_validation_rules(self):
        graph = StepGraph.from_dicts("X", [
            {"step_number": 1},
            {"step_number": 2, "blocks_on_failure": True, "validation_rules": {"restart": 1}},
        ])
        assert graph.get(2).restart_from_step == 1

    def test_catalogue_without_product_types(self):
        with pytest.raises(ConfigurationError):
            parse_step_catalog({"product_types": {}})
