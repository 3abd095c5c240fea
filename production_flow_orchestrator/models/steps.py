"""
Step definition models for Production Flow Orchestrator

Defines the immutable, per-product-type step table: step flags, conditional
branching fields, restart targets and validation rules.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Iterator, Sequence, Mapping

from ..core.exceptions import ConfigurationError, StepNotFoundError


class MeasurementType:
    """Measurement field input types."""
    NUMBER = "number"
    TEXT = "text"
    PASS_FAIL = "pass_fail"

    ALL = (NUMBER, TEXT, PASS_FAIL)


@dataclass(frozen=True)
class MeasurementField:
    """A measurement the operator captures at a step."""

    name: str
    label: str = ""
    unit: Optional[str] = None
    type: str = MeasurementType.NUMBER

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "label": self.label, "unit": self.unit, "type": self.type}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MeasurementField":
        field_type = data.get("type", MeasurementType.NUMBER)
        # "boolean" is what older seed rows used for pass/fail tests
        if field_type == "boolean":
            field_type = MeasurementType.PASS_FAIL
        if field_type not in MeasurementType.ALL:
            raise ConfigurationError("measurement_fields", f"unknown measurement type {field_type!r}")
        return cls(
            name=data["name"],
            label=data.get("label") or data["name"],
            unit=data.get("unit"),
            type=field_type
        )


@dataclass(frozen=True)
class FieldRule:
    """Numeric bounds for one measurement field."""

    min_value: Optional[float] = None
    max_value: Optional[float] = None
    min_exclusive: bool = False
    max_exclusive: bool = False

    def check(self, value: float) -> Optional[str]:
        """Return a failure description or None when the value is within bounds."""
        if self.min_value is not None:
            if self.min_exclusive and not value > self.min_value:
                return f"must be > {self.min_value}"
            if not self.min_exclusive and not value >= self.min_value:
                return f"must be >= {self.min_value}"
        if self.max_value is not None:
            if self.max_exclusive and not value < self.max_value:
                return f"must be < {self.max_value}"
            if not self.max_exclusive and not value <= self.max_value:
                return f"must be <= {self.max_value}"
        return None

    @property
    def is_empty(self) -> bool:
        return self.min_value is None and self.max_value is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min": self.min_value,
            "max": self.max_value,
            "min_exclusive": self.min_exclusive,
            "max_exclusive": self.max_exclusive
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FieldRule":
        """Parse the bound shapes found in seeded step data.

        ``{"min": x}`` is inclusive, ``{"max": x}`` on its own is exclusive,
        ``{"min": a, "max": b}`` is an inclusive range, and the
        ``min_value``/``max_value`` + ``operator`` form takes its
        exclusivity from the operator. An explicit ``exclusive`` flag
        overrides both defaults.
        """
        min_value = data.get("min", data.get("min_value"))
        max_value = data.get("max", data.get("max_value"))
        operator = data.get("operator")
        exclusive = data.get("exclusive")

        if "min_exclusive" in data:
            min_exclusive = bool(data["min_exclusive"])
        elif exclusive is not None:
            min_exclusive = bool(exclusive)
        else:
            min_exclusive = operator == ">"

        if "max_exclusive" in data:
            max_exclusive = bool(data["max_exclusive"])
        elif exclusive is not None:
            max_exclusive = bool(exclusive)
        elif operator is not None:
            max_exclusive = operator == "<"
        else:
            max_exclusive = "max" in data and min_value is None

        try:
            return cls(
                min_value=float(min_value) if min_value is not None else None,
                max_value=float(max_value) if max_value is not None else None,
                min_exclusive=min_exclusive,
                max_exclusive=max_exclusive
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError("validation_rules", f"bounds must be numeric: {e}")


@dataclass(frozen=True)
class ValidationRules:
    """Structured constraints evaluated against a recorded step result."""

    bounds: FieldRule = field(default_factory=FieldRule)
    field_rules: Dict[str, FieldRule] = field(default_factory=dict)
    required: Tuple[str, ...] = ()
    pass_fail: bool = False
    barcode_pattern: Optional[str] = None
    restart: Optional[int] = None
    fail_action: Optional[str] = None
    barcode_regex: Optional[Any] = field(default=None, init=False, compare=False, repr=False)

    def __post_init__(self):
        if self.barcode_pattern is None:
            return
        try:
            compiled = re.compile(self.barcode_pattern)
        except re.error as e:
            raise ConfigurationError(
                "validation_rules", f"invalid barcode_pattern {self.barcode_pattern!r}: {e}"
            )
        object.__setattr__(self, "barcode_regex", compiled)

    @property
    def is_empty(self) -> bool:
        return (
            self.bounds.is_empty
            and not self.field_rules
            and not self.required
            and not self.pass_fail
            and self.barcode_pattern is None
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if not self.bounds.is_empty:
            data.update(self.bounds.to_dict())
        if self.field_rules:
            data["fields"] = {name: rule.to_dict() for name, rule in self.field_rules.items()}
        if self.required:
            data["required"] = list(self.required)
        if self.pass_fail:
            data["pass_fail"] = True
        if self.barcode_pattern:
            data["barcode_pattern"] = self.barcode_pattern
        if self.restart is not None:
            data["restart"] = self.restart
        if self.fail_action:
            data["fail_action"] = self.fail_action
        return data

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ValidationRules":
        if not data:
            return cls()

        field_rules = {
            name: FieldRule.from_dict(rule)
            for name, rule in (data.get("fields") or {}).items()
        }
        restart = data.get("restart")

        return cls(
            bounds=FieldRule.from_dict(data),
            field_rules=field_rules,
            required=tuple(data.get("required") or ()),
            pass_fail=bool(data.get("pass_fail")) or data.get("type") == "pass_fail",
            barcode_pattern=data.get("barcode_pattern"),
            restart=int(restart) if restart is not None else None,
            fail_action=data.get("fail_action")
        )


@dataclass(frozen=True)
class StepDefinition:
    """One step of a product type's manufacturing sequence."""

    # Primary identification
    product_type: str
    step_number: int
    sort_order: int

    title: str = ""
    description: str = ""

    # Operator input requirements
    requires_barcode_scan: bool = False
    requires_batch_number: bool = False
    requires_value_input: bool = False
    has_checklist: bool = False
    batch_type: Optional[str] = None

    # Flow control
    blocks_on_failure: bool = False
    conditional_on_step: Optional[int] = None
    conditional_value: Optional[str] = None
    restart_from_step: Optional[int] = None

    # Validation
    validation_rules: ValidationRules = field(default_factory=ValidationRules)
    measurement_fields: Tuple[MeasurementField, ...] = ()

    @property
    def is_conditional(self) -> bool:
        return self.conditional_on_step is not None

    @property
    def has_validation(self) -> bool:
        return not self.validation_rules.is_empty

    def to_dict(self) -> Dict[str, Any]:
        """Convert definition to dictionary."""
        return {
            "product_type": self.product_type,
            "step_number": self.step_number,
            "sort_order": self.sort_order,
            "title": self.title,
            "description": self.description,
            "requires_barcode_scan": self.requires_barcode_scan,
            "requires_batch_number": self.requires_batch_number,
            "requires_value_input": self.requires_value_input,
            "has_checklist": self.has_checklist,
            "batch_type": self.batch_type,
            "blocks_on_failure": self.blocks_on_failure,
            "conditional_on_step": self.conditional_on_step,
            "conditional_value": self.conditional_value,
            "restart_from_step": self.restart_from_step,
            "validation_rules": self.validation_rules.to_dict(),
            "measurement_fields": [f.to_dict() for f in self.measurement_fields]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], product_type: Optional[str] = None) -> "StepDefinition":
        """Create a definition from a seed row or catalogue entry."""
        try:
            step_number = int(data["step_number"])
        except (KeyError, TypeError, ValueError):
            raise ConfigurationError("step_number", f"missing or non-integer step_number in {data!r}")

        rules = ValidationRules.from_dict(data.get("validation_rules"))

        raw_fields = data.get("measurement_fields") or []
        if isinstance(raw_fields, dict):
            raw_fields = [dict(spec, name=name) for name, spec in raw_fields.items()]
        measurement_fields = tuple(MeasurementField.from_dict(f) for f in raw_fields)

        restart_from_step = data.get("restart_from_step")
        if restart_from_step is None:
            restart_from_step = rules.restart

        conditional_on_step = data.get("conditional_on_step")
        conditional_value = data.get("conditional_value")

        return cls(
            product_type=product_type or data["product_type"],
            step_number=step_number,
            sort_order=int(data.get("sort_order", step_number)),
            title=data.get("title") or data.get("title_en") or "",
            description=data.get("description") or data.get("description_en") or "",
            requires_barcode_scan=bool(data.get("requires_barcode_scan", False)),
            requires_batch_number=bool(data.get("requires_batch_number", False)),
            requires_value_input=bool(data.get("requires_value_input", False)),
            has_checklist=bool(data.get("has_checklist", False)),
            batch_type=data.get("batch_type"),
            blocks_on_failure=bool(data.get("blocks_on_failure", False)),
            conditional_on_step=int(conditional_on_step) if conditional_on_step is not None else None,
            conditional_value=str(conditional_value) if conditional_value is not None else None,
            restart_from_step=int(restart_from_step) if restart_from_step is not None else None,
            validation_rules=rules,
            measurement_fields=measurement_fields
        )


class StepGraph:
    """
    Ordered, validated step table for a single product type.

    Built once at configuration load. A table that is empty or whose
    conditional/restart references point nowhere is rejected here rather
    than surfacing as a runtime error on the shop floor.
    """

    def __init__(self, product_type: str, definitions: Sequence[StepDefinition]):
        self.product_type = product_type
        self._ordered: Tuple[StepDefinition, ...] = tuple(
            sorted(definitions, key=lambda d: (d.sort_order, d.step_number))
        )
        self._by_number: Dict[int, StepDefinition] = {}
        self._positions: Dict[int, int] = {}
        self._validate()

    @classmethod
    def from_definitions(cls, product_type: str, definitions: Sequence[StepDefinition]) -> "StepGraph":
        return cls(product_type, definitions)

    @classmethod
    def from_dicts(cls, product_type: str, rows: Sequence[Dict[str, Any]]) -> "StepGraph":
        return cls(product_type, [StepDefinition.from_dict(row, product_type=product_type) for row in rows])

    def _validate(self):
        if not self._ordered:
            raise ConfigurationError(self.product_type, "product type has no step definitions")

        for position, definition in enumerate(self._ordered):
            if definition.product_type != self.product_type:
                raise ConfigurationError(
                    self.product_type,
                    f"step {definition.step_number} belongs to product type {definition.product_type}"
                )
            if definition.step_number in self._by_number:
                raise ConfigurationError(self.product_type, f"duplicate step_number {definition.step_number}")
            self._by_number[definition.step_number] = definition
            self._positions[definition.step_number] = position

        for definition in self._ordered:
            position = self._positions[definition.step_number]

            if definition.conditional_on_step is not None:
                target = self._positions.get(definition.conditional_on_step)
                if target is None:
                    raise ConfigurationError(
                        self.product_type,
                        f"step {definition.step_number} is conditional on unknown step {definition.conditional_on_step}"
                    )
                if target >= position:
                    raise ConfigurationError(
                        self.product_type,
                        f"step {definition.step_number} is conditional on step {definition.conditional_on_step}, "
                        "which does not precede it"
                    )
                if definition.conditional_value is None:
                    raise ConfigurationError(
                        self.product_type,
                        f"step {definition.step_number} has conditional_on_step without conditional_value"
                    )

            if definition.restart_from_step is not None:
                target = self._positions.get(definition.restart_from_step)
                if target is None:
                    raise ConfigurationError(
                        self.product_type,
                        f"step {definition.step_number} restarts from unknown step {definition.restart_from_step}"
                    )
                if target > position:
                    raise ConfigurationError(
                        self.product_type,
                        f"step {definition.step_number} restarts from later step {definition.restart_from_step}"
                    )

    def __iter__(self) -> Iterator[StepDefinition]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, step_number: object) -> bool:
        return step_number in self._by_number

    @property
    def definitions(self) -> Tuple[StepDefinition, ...]:
        return self._ordered

    @property
    def step_numbers(self) -> List[int]:
        return [d.step_number for d in self._ordered]

    def get(self, step_number: int) -> StepDefinition:
        try:
            return self._by_number[step_number]
        except KeyError:
            raise StepNotFoundError(self.product_type, step_number)

    def position(self, step_number: int) -> int:
        if step_number not in self._positions:
            raise StepNotFoundError(self.product_type, step_number)
        return self._positions[step_number]

    def after(self, step_number: int) -> Tuple[StepDefinition, ...]:
        """Definitions that follow ``step_number`` in sort order."""
        return self._ordered[self.position(step_number) + 1:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_type": self.product_type,
            "steps": [d.to_dict() for d in self._ordered]
        }
