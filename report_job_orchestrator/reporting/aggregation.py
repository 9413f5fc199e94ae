"""
Grouping and measure aggregation for report rows.

Measures are written as ``count`` or ``<function>:<field>`` where function is
one of sum, avg, min, max or distinct. Aggregation is incremental so the
worker can feed batches as they arrive from the data source.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.exceptions import NonRetryableError


MEASURE_FUNCTIONS = ("count", "sum", "avg", "min", "max", "distinct")


@dataclass(frozen=True)
class Measure:
    """A parsed measure specification."""

    function: str
    field: Optional[str] = None

    @property
    def spec(self) -> str:
        return self.function if self.field is None else f"{self.function}:{self.field}"

    @property
    def label(self) -> str:
        return self.function if self.field is None else f"{self.function}_{self.field}"


def parse_measure(spec: str) -> Measure:
    """
    Parse a measure string.

    Raises:
        ValueError: If the measure is malformed or uses an unknown function
    """
    function, _, field_name = spec.strip().partition(":")
    function = function.lower()
    if function not in MEASURE_FUNCTIONS:
        raise ValueError(f"unknown measure function '{function}'")
    if function == "count":
        return Measure("count", field_name or None)
    if not field_name:
        raise ValueError(f"measure '{function}' requires a field, e.g. '{function}:score'")
    return Measure(function, field_name)


class _Accumulator:
    __slots__ = ("count", "total", "numeric_count", "minimum", "maximum", "distinct")

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.numeric_count = 0
        self.minimum: Any = None
        self.maximum: Any = None
        self.distinct: set = set()


class Aggregator:
    """
    Incremental group-by aggregator.

    Without ``group_by`` and ``measures`` records pass through unchanged.
    ``group_by`` without measures counts records per group.
    """

    def __init__(self, group_by: Optional[Sequence[str]] = None, measures: Optional[Sequence[str]] = None):
        self.group_by: Tuple[str, ...] = tuple(group_by or ())
        parsed = [parse_measure(m) for m in (measures or [])]
        if self.group_by and not parsed:
            parsed = [Measure("count")]
        self.measures: Tuple[Measure, ...] = tuple(parsed)
        self.passthrough = not self.group_by and not self.measures

        self._rows: List[Dict[str, Any]] = []
        self._groups: Dict[Tuple[Any, ...], Dict[Measure, _Accumulator]] = {}
        self.records_seen = 0

    def add(self, records: Iterable[Dict[str, Any]]) -> None:
        """Feed a batch of records."""
        for record in records:
            self.records_seen += 1
            if self.passthrough:
                self._rows.append(dict(record))
                continue

            key = tuple(record.get(name) for name in self.group_by)
            accumulators = self._groups.get(key)
            if accumulators is None:
                accumulators = {measure: _Accumulator() for measure in self.measures}
                self._groups[key] = accumulators

            for measure, acc in accumulators.items():
                self._accumulate(measure, acc, record)

    def _accumulate(self, measure: Measure, acc: _Accumulator, record: Dict[str, Any]) -> None:
        if measure.field is None:
            acc.count += 1
            return

        value = record.get(measure.field)
        if value is None:
            return
        acc.count += 1

        if measure.function == "distinct":
            acc.distinct.add(value)
        elif measure.function in ("sum", "avg"):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise NonRetryableError(
                    f"measure {measure.spec} requires numeric values, got {value!r}",
                    error_code="AGGREGATION_ERROR",
                    stage="aggregating"
                )
            acc.total += value
            acc.numeric_count += 1
        elif measure.function == "min":
            acc.minimum = value if acc.minimum is None else min(acc.minimum, value)
        elif measure.function == "max":
            acc.maximum = value if acc.maximum is None else max(acc.maximum, value)

    def result(self) -> List[Dict[str, Any]]:
        """Aggregated rows, ordered by group key."""
        if self.passthrough:
            return list(self._rows)

        rows = []
        for key in sorted(self._groups, key=_sortable_key):
            row: Dict[str, Any] = dict(zip(self.group_by, key))
            for measure, acc in self._groups[key].items():
                row[measure.label] = _finalize(measure, acc)
            rows.append(row)
        return rows


def _finalize(measure: Measure, acc: _Accumulator) -> Any:
    if measure.function == "count":
        return acc.count
    if measure.function == "sum":
        return acc.total
    if measure.function == "avg":
        return acc.total / acc.numeric_count if acc.numeric_count else None
    if measure.function == "min":
        return acc.minimum
    if measure.function == "max":
        return acc.maximum
    return len(acc.distinct)


def _sortable_key(key: Tuple[Any, ...]) -> Tuple[str, ...]:
    return tuple("" if part is None else str(part) for part in key)
