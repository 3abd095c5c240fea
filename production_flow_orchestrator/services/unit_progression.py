"""
UnitProgressionController service for Production Flow Orchestrator

Moves units across their step graph using the StepGraphResolver and the
ExecutionStateMachine, and is the only component that writes a unit's
``current_step``.
"""

import asyncio
import time
import uuid
import weakref
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from ..models.steps import StepGraph
from ..models.unit import (
    WorkOrder, ProductionUnit, StepExecution, ExecutionStatus, ValidationStatus, UnitStatus,
    can_unit_transition_to
)
from ..models.events import UnitRestarted, UnitCompleted
from ..utils.store import ProductionStore
from ..utils.logger import get_logger, set_log_context, LoggerContext
from ..utils.metrics import UNITS_COMPLETED
from ..core.exceptions import AlreadyActiveError, UnitNotFoundError, InvalidTransitionError
from .step_resolver import (
    StepGraphResolver, StepOutcome, NextStep, Restart, BlockedFailure, Terminal, recorded_values_from
)
from .execution_state_machine import ExecutionStateMachine, RecordOutcome
from .event_bus import EventBus


class AdvanceAction:
    """What an ``advance`` call did."""
    BEGAN = "began"
    NOOP = "noop"
    BLOCKED = "blocked"
    RESTARTED = "restarted"
    COMPLETED = "completed"


@dataclass
class AdvanceResult:
    """Outcome of advancing one unit."""

    unit: ProductionUnit
    action: str
    execution: Optional[StepExecution] = None
    skipped: List[int] = field(default_factory=list)
    superseded: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit.unit_id,
            "serial_number": self.unit.serial_number,
            "action": self.action,
            "current_step": self.unit.current_step,
            "status": self.unit.status.value,
            "execution_id": self.execution.execution_id if self.execution else None,
            "skipped": self.skipped,
            "superseded": self.superseded
        }


@dataclass
class RecordAndAdvanceResult:
    """Outcome of recording a result and advancing the unit."""

    record: RecordOutcome
    advance: AdvanceResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution": self.record.execution.to_dict(),
            "validation_status": self.record.validation.status.value,
            "validation_message": self.record.validation.message,
            "blocked": self.record.blocked,
            "advance": self.advance.to_dict()
        }


def expected_current_step(graph: StepGraph, executions: List[StepExecution]) -> int:
    """Step of the latest live, non-skipped execution, else the first applicable step."""
    live = [e for e in executions if not e.is_superseded and e.status != ExecutionStatus.SKIPPED]
    if live:
        return max(live, key=lambda e: e.sequence).step_number
    first = StepGraphResolver().first_step(graph, {})
    if isinstance(first, NextStep):
        return first.step_number
    return graph.definitions[0].step_number


class UnitProgressionController:
    """
    Advances units through their step graphs.

    Mutations of one unit are serialised by a per-unit lock; across
    processes the store's active-execution uniqueness does the same job.
    """

    def __init__(self, store: ProductionStore, resolver: StepGraphResolver,
                 state_machine: ExecutionStateMachine, event_bus: Optional[EventBus] = None):
        """
        Initialize UnitProgressionController.

        Args:
            store: Persistence for units and executions
            resolver: Step graph resolver with loaded graphs
            state_machine: Execution state machine
            event_bus: Channel for UnitRestarted/UnitCompleted events
        """
        self.store = store
        self.resolver = resolver
        self.state_machine = state_machine
        self.event_bus = event_bus
        # Entries vanish once no caller holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="unit_progression")

    def _lock_for(self, unit_id: str) -> asyncio.Lock:
        lock = self._locks.get(unit_id)
        if lock is None:
            lock = self._locks[unit_id] = asyncio.Lock()
        return lock

    async def _publish(self, event):
        if self.event_bus is not None:
            await self.event_bus.publish(event)

    async def _load_unit(self, unit_id: str) -> ProductionUnit:
        unit = await self.store.get_unit(unit_id)
        if unit is None:
            raise UnitNotFoundError(unit_id)
        return unit

    async def get_unit(self, unit_ref: str) -> ProductionUnit:
        """Look a unit up by id or serial number."""
        unit = await self.store.get_unit(unit_ref)
        if unit is None:
            unit = await self.store.get_unit_by_serial(unit_ref)
        if unit is None:
            raise UnitNotFoundError(unit_ref)
        return unit

    # Unit creation

    def _entry_step(self, graph: StepGraph) -> int:
        first = self.resolver.first_step(graph, {})
        if isinstance(first, NextStep):
            return first.step_number
        return graph.definitions[0].step_number

    async def start_unit(self, work_order: WorkOrder, position_in_batch: int,
                         serial_number: str) -> ProductionUnit:
        """Create a planned unit positioned on its first applicable step."""
        graph = self.resolver.get_graph(work_order.product_type)
        unit = ProductionUnit(
            unit_id=str(uuid.uuid4()),
            serial_number=serial_number,
            work_order_id=work_order.work_order_id,
            product_type=work_order.product_type,
            position_in_batch=position_in_batch,
            current_step=self._entry_step(graph),
            status=UnitStatus.PLANNED
        )
        await self.store.insert_unit(unit)

        self.logger.info("Unit created", extra={
            "unit_id": unit.unit_id,
            "serial_number": serial_number,
            "work_order_id": work_order.work_order_id,
            "current_step": unit.current_step
        })
        return unit

    async def create_units_for_work_order(self, work_order: WorkOrder, serial_prefix: str) -> List[ProductionUnit]:
        """Create ``batch_size`` units with ``<prefix>-<epoch ms>-<position>`` serial numbers."""
        stamp = int(time.time() * 1000)
        units = []
        for position in range(1, work_order.batch_size + 1):
            serial_number = f"{serial_prefix}-{stamp}-{position:03d}"
            units.append(await self.start_unit(work_order, position, serial_number))
        return units

    # Progression

    async def advance(self, unit_id: str) -> AdvanceResult:
        """
        Move a unit to whatever follows its latest execution.

        Calling again without an intervening result is a no-op.
        """
        async with self._lock_for(unit_id):
            with LoggerContext(self.logger, unit_id=unit_id):
                return await self._advance_locked(unit_id)

    async def _advance_locked(self, unit_id: str) -> AdvanceResult:
        unit = await self._load_unit(unit_id)
        if unit.is_finished():
            return AdvanceResult(unit=unit, action=AdvanceAction.NOOP)

        graph = self.resolver.get_graph(unit.product_type)
        executions = await self.store.list_executions(unit.unit_id)
        live = [e for e in executions if not e.is_superseded]

        if not live:
            decision = self.resolver.first_step(graph, {})
        else:
            latest = live[-1]
            if not latest.is_terminal:
                if latest.validation_status != ValidationStatus.FAILED:
                    # Attempt still open, nothing to resolve yet
                    return AdvanceResult(unit=unit, action=AdvanceAction.NOOP, execution=latest)
                outcome = StepOutcome.FAIL
            elif latest.status == ExecutionStatus.SKIPPED or latest.passed:
                outcome = StepOutcome.PASS
            else:
                outcome = StepOutcome.FAIL
            decision = self.resolver.resolve_next(
                graph, latest.step_number, outcome, recorded_values_from(live)
            )

        try:
            if isinstance(decision, NextStep):
                return await self._begin_next(unit, graph, decision)
            if isinstance(decision, Restart):
                return await self._restart(unit, graph, live, decision)
            if isinstance(decision, BlockedFailure):
                return await self._hold(unit, live[-1])
            return await self._complete(unit, graph, decision)
        except AlreadyActiveError as e:
            # Another caller began the same step first
            self.logger.debug("Advance raced with a concurrent caller", extra={
                "unit_id": unit.unit_id,
                "details": e.details
            })
            return AdvanceResult(unit=await self._load_unit(unit_id), action=AdvanceAction.NOOP)

    async def _record_skips(self, unit: ProductionUnit, graph: StepGraph, skipped) -> List[int]:
        for step_number in skipped:
            definition = graph.get(step_number)
            await self.state_machine.skip(
                unit, definition,
                reason=f"condition not met: step {definition.conditional_on_step} != {definition.conditional_value}"
            )
        return list(skipped)

    async def _begin_next(self, unit: ProductionUnit, graph: StepGraph, decision: NextStep) -> AdvanceResult:
        definition = graph.get(decision.step_number)

        # Skip rows precede the begun execution in append order
        skipped = await self._record_skips(unit, graph, decision.skipped)
        execution = await self.state_machine.begin(unit, definition)

        unit.current_step = decision.step_number
        unit.status = UnitStatus.IN_PROGRESS
        await self.store.update_unit(unit)

        self.logger.info("Unit advanced", extra={
            "unit_id": unit.unit_id,
            "current_step": unit.current_step,
            "skipped": skipped
        })
        return AdvanceResult(unit=unit, action=AdvanceAction.BEGAN, execution=execution, skipped=skipped)

    async def _restart(self, unit: ProductionUnit, graph: StepGraph, live: List[StepExecution],
                       decision: Restart) -> AdvanceResult:
        first = graph.position(decision.step_number)
        last = graph.position(decision.failed_step)
        rewound = [e for e in live if first <= graph.position(e.step_number) <= last]

        replacement_id = str(uuid.uuid4())
        superseded = await self.state_machine.supersede(rewound, replaced_by=replacement_id)

        execution = await self.state_machine.begin(
            unit, graph.get(decision.step_number), execution_id=replacement_id
        )
        unit.current_step = decision.step_number
        unit.status = UnitStatus.IN_PROGRESS
        await self.store.update_unit(unit)

        superseded_ids = [e.execution_id for e in superseded]
        self.logger.warning("Unit rewound after failure", extra={
            "unit_id": unit.unit_id,
            "failed_step": decision.failed_step,
            "restart_step": decision.step_number,
            "superseded": superseded_ids
        })

        await self._publish(UnitRestarted(
            unit_id=unit.unit_id,
            serial_number=unit.serial_number,
            failed_step=decision.failed_step,
            restart_step=decision.step_number,
            superseded=superseded_ids
        ))
        return AdvanceResult(unit=unit, action=AdvanceAction.RESTARTED, execution=execution,
                             superseded=superseded_ids)

    async def _hold(self, unit: ProductionUnit, execution: StepExecution) -> AdvanceResult:
        if unit.status != UnitStatus.ON_HOLD:
            unit.status = UnitStatus.ON_HOLD
            await self.store.update_unit(unit)
        return AdvanceResult(unit=unit, action=AdvanceAction.BLOCKED, execution=execution)

    async def _complete(self, unit: ProductionUnit, graph: StepGraph, decision: Terminal) -> AdvanceResult:
        skipped = await self._record_skips(unit, graph, decision.skipped)

        unit.status = UnitStatus.COMPLETED
        await self.store.update_unit(unit)

        UNITS_COMPLETED.labels(unit.product_type).inc()
        self.logger.info("Unit completed", extra={
            "unit_id": unit.unit_id,
            "serial_number": unit.serial_number,
            "final_step": unit.current_step
        })

        await self._publish(UnitCompleted(
            unit_id=unit.unit_id,
            serial_number=unit.serial_number,
            work_order_id=unit.work_order_id,
            product_type=unit.product_type,
            final_step=unit.current_step
        ))
        return AdvanceResult(unit=unit, action=AdvanceAction.COMPLETED, skipped=skipped)

    async def record_and_advance(self, unit_id: str,
                                 value_recorded: Optional[str] = None,
                                 measurement_values: Optional[Dict[str, Any]] = None,
                                 barcode_scanned: Optional[str] = None,
                                 batch_number: Optional[str] = None,
                                 notes: Optional[str] = None,
                                 operator_initials: Optional[str] = None) -> RecordAndAdvanceResult:
        """Record a result on the unit's current step and advance it."""
        async with self._lock_for(unit_id):
            with LoggerContext(self.logger, unit_id=unit_id):
                unit = await self._load_unit(unit_id)
                if unit.is_finished():
                    raise InvalidTransitionError(unit.unit_id, unit.status.value, ExecutionStatus.COMPLETED.value)

                execution = await self.store.get_active_execution(unit.unit_id, unit.current_step)
                if execution is None:
                    started = await self._advance_locked(unit_id)
                    execution = started.execution
                    unit = started.unit
                    if execution is None or execution.is_terminal:
                        raise InvalidTransitionError(unit.unit_id, unit.status.value, ExecutionStatus.COMPLETED.value)

                graph = self.resolver.get_graph(unit.product_type)
                record = await self.state_machine.record_result(
                    unit, execution, graph.get(execution.step_number),
                    value_recorded=value_recorded,
                    measurement_values=measurement_values,
                    barcode_scanned=barcode_scanned,
                    batch_number=batch_number,
                    notes=notes,
                    operator_initials=operator_initials
                )
                advance = await self._advance_locked(unit_id)
                return RecordAndAdvanceResult(record=record, advance=advance)

    async def bypass_step(self, unit_id: str, reason: str) -> AdvanceResult:
        """Explicitly skip the unit's open step and advance."""
        async with self._lock_for(unit_id):
            unit = await self._load_unit(unit_id)
            execution = await self.store.get_active_execution(unit.unit_id, unit.current_step)
            if execution is None:
                raise InvalidTransitionError(unit.unit_id, unit.status.value, ExecutionStatus.SKIPPED.value)
            await self.state_machine.bypass(unit, execution, reason)
            return await self._advance_locked(unit_id)

    async def update_unit_state(self, unit_id: str, status: Optional[UnitStatus] = None,
                                flags: Optional[Dict[str, bool]] = None) -> ProductionUnit:
        """
        Change a unit's status or downstream flags without touching ``current_step``.

        Runs under the unit's lock so it cannot interleave with an advance.

        Raises:
            UnitNotFoundError: If the unit does not exist
            InvalidTransitionError: If the unit cannot move to ``status``
        """
        async with self._lock_for(unit_id):
            unit = await self._load_unit(unit_id)
            if status is not None and not can_unit_transition_to(unit.status, status):
                raise InvalidTransitionError(unit.unit_id, unit.status.value, status.value)

            updated = await self.store.update_unit_state(unit.unit_id, status=status, flags=flags)
            self.logger.info("Unit state updated", extra={
                "unit_id": unit.unit_id,
                "status": updated.status.value,
                "flags": flags or {}
            })
            return updated

    async def check_invariant(self, unit_id: str) -> bool:
        """Recompute the expected ``current_step`` and compare it with the stored one."""
        unit = await self._load_unit(unit_id)
        graph = self.resolver.get_graph(unit.product_type)
        executions = await self.store.list_executions(unit.unit_id)
        expected = expected_current_step(graph, executions)
        if expected != unit.current_step:
            self.logger.error("current_step invariant violated", extra={
                "unit_id": unit.unit_id,
                "current_step": unit.current_step,
                "expected_step": expected
            })
            return False
        return True

    async def get_unit_status(self, unit_ref: str) -> Dict[str, Any]:
        """Unit state with its execution history."""
        unit = await self.get_unit(unit_ref)
        executions = await self.store.list_executions(unit.unit_id)
        return {
            "unit": unit.to_dict(),
            "executions": [e.to_dict() for e in executions]
        }
