"""
StepGraphResolver service for Production Flow Orchestrator

Computes where a unit goes after a step: the next applicable step, a rewind
to an earlier step, a blocked failure, or the end of the graph. Resolution is
a pure function over a ``StepGraph`` and the values the unit has recorded.
"""

from enum import Enum
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

from ..models.steps import StepDefinition, StepGraph
from ..models.unit import StepExecution, ExecutionStatus
from ..core.exceptions import ConfigurationError


class StepOutcome(Enum):
    """Outcome of a completed step attempt."""
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True)
class NextStep:
    """Begin ``step_number``; ``skipped`` steps are recorded as skipped first."""
    step_number: int
    skipped: Tuple[int, ...] = ()


@dataclass(frozen=True)
class Restart:
    """Rewind the unit to ``step_number`` after ``failed_step`` failed."""
    step_number: int
    failed_step: int


@dataclass(frozen=True)
class BlockedFailure:
    """The unit stays on ``step_number`` and goes on hold."""
    step_number: int


@dataclass(frozen=True)
class Terminal:
    """No applicable step remains; ``skipped`` trailing steps are recorded."""
    skipped: Tuple[int, ...] = ()


Resolution = Union[NextStep, Restart, BlockedFailure, Terminal]


def normalize_recorded_value(value) -> Optional[str]:
    """String form used when comparing against ``conditional_value``."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def recorded_values_from(executions: Iterable[StepExecution]) -> Dict[int, str]:
    """Latest recorded value per step from live completed executions.

    A completed execution without ``value_recorded`` contributes its
    validation status so branches can key on pass/fail.
    """
    values: Dict[int, str] = {}
    for execution in sorted(executions, key=lambda e: e.sequence):
        if execution.is_superseded or execution.status != ExecutionStatus.COMPLETED:
            continue
        if execution.value_recorded is not None:
            values[execution.step_number] = normalize_recorded_value(execution.value_recorded)
        elif execution.validation_status is not None:
            values[execution.step_number] = execution.validation_status.value
    return values


class StepGraphResolver:
    """
    Resolves step transitions for registered product types.

    Holds the loaded graphs only; every resolution is computed from its
    arguments.
    """

    def __init__(self, graphs: Optional[Mapping[str, StepGraph]] = None):
        self._graphs: Dict[str, StepGraph] = dict(graphs or {})

    def register(self, graph: StepGraph):
        self._graphs[graph.product_type] = graph

    def get_graph(self, product_type: str) -> StepGraph:
        graph = self._graphs.get(product_type)
        if graph is None:
            raise ConfigurationError(product_type, "no step graph is loaded for this product type")
        return graph

    @property
    def product_types(self):
        return sorted(self._graphs)

    @staticmethod
    def is_applicable(definition: StepDefinition, recorded_values: Mapping[int, str]) -> bool:
        """A step applies when unconditional or its referenced step recorded the expected value."""
        if definition.conditional_on_step is None:
            return True
        recorded = recorded_values.get(definition.conditional_on_step)
        return recorded is not None and recorded == normalize_recorded_value(definition.conditional_value)

    def _scan(self, candidates: Iterable[StepDefinition],
              recorded_values: Mapping[int, str]) -> Union[NextStep, Terminal]:
        skipped = []
        for definition in candidates:
            if self.is_applicable(definition, recorded_values):
                return NextStep(definition.step_number, tuple(skipped))
            skipped.append(definition.step_number)
        return Terminal(tuple(skipped))

    def first_step(self, graph: StepGraph,
                   recorded_values: Optional[Mapping[int, str]] = None) -> Union[NextStep, Terminal]:
        """Resolve the entry step of ``graph``."""
        return self._scan(graph.definitions, recorded_values or {})

    def resolve_next(self, graph: StepGraph, completed_step: int, outcome: StepOutcome,
                     recorded_values: Optional[Mapping[int, str]] = None) -> Resolution:
        """
        Decide what follows ``completed_step``.

        Args:
            graph: Step graph of the unit's product type
            completed_step: Step whose attempt just finished
            outcome: PASS or FAIL for that attempt
            recorded_values: Step number to recorded value for the unit

        Returns:
            NextStep, Restart, BlockedFailure or Terminal
        """
        definition = graph.get(completed_step)
        outcome = StepOutcome(outcome)

        if outcome == StepOutcome.FAIL and definition.blocks_on_failure:
            if definition.restart_from_step is not None:
                return Restart(definition.restart_from_step, completed_step)
            return BlockedFailure(completed_step)

        return self._scan(graph.after(completed_step), recorded_values or {})
