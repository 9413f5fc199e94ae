"""
Report type registry.

The catalog of report types is bounded and supplied from outside the engine:
each entry names its data source, parameter model, supported formats and
retry budget.
"""

import importlib
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..core.exceptions import ConfigurationError, ValidationError
from ..utils.logger import get_logger
from .base import ReportDataSource, ReportTypeDefinition
from .renderers import RENDERERS


def load_object(path: str) -> Any:
    """
    Import an object from a ``module:attribute`` path.

    Raises:
        ConfigurationError: If the module or attribute cannot be found
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError("data_source", f"expected 'module:attribute', got '{path}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError("data_source", f"cannot import module '{module_name}': {e}")

    obj: Any = module
    for part in attribute.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError:
            raise ConfigurationError("data_source", f"'{module_name}' has no attribute '{attribute}'")
    return obj


class ReportTypeRegistry:
    """Lookup of registered report type definitions by name."""

    def __init__(self, definitions: Optional[Iterable[ReportTypeDefinition]] = None):
        self._definitions: Dict[str, ReportTypeDefinition] = {}
        self.logger = get_logger(__name__)
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: ReportTypeDefinition) -> None:
        unknown = {fmt for fmt in definition.formats if fmt not in RENDERERS}
        if unknown:
            raise ConfigurationError(
                f"report_types.{definition.name}.formats",
                f"no renderer for format(s): {', '.join(sorted(unknown))}"
            )
        if definition.name in self._definitions:
            self.logger.warning(f"Replacing report type definition {definition.name}")
        self._definitions[definition.name] = definition
        self.logger.debug(f"Registered report type {definition.name}")

    def get(self, report_type: str) -> ReportTypeDefinition:
        """
        Get the definition for a report type.

        Raises:
            ValidationError: If the report type is not registered
        """
        definition = self._definitions.get(report_type)
        if definition is None:
            raise ValidationError(
                "reportType",
                f"unknown report type '{report_type}'",
                value=report_type,
                error_code="UNKNOWN_REPORT_TYPE"
            )
        return definition

    def names(self) -> List[str]:
        return sorted(self._definitions)

    def __contains__(self, report_type: str) -> bool:
        return report_type in self._definitions

    def __iter__(self) -> Iterator[ReportTypeDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)

    @classmethod
    def from_config(cls, report_types: Iterable[Any]) -> "ReportTypeRegistry":
        """
        Build a registry from ``report_types`` config entries.

        Each entry's ``data_source`` is a ``module:attribute`` path to either a
        ``ReportDataSource`` instance or a zero-argument factory returning one;
        ``parameters_model`` may name a ``ReportParameters`` subclass the same way.
        """
        registry = cls()
        for entry in report_types:
            source = load_object(entry.data_source)
            if not isinstance(source, ReportDataSource):
                source = source()
            if not isinstance(source, ReportDataSource):
                raise ConfigurationError(
                    f"report_types.{entry.name}.data_source",
                    f"'{entry.data_source}' did not produce a ReportDataSource"
                )

            kwargs: Dict[str, Any] = {
                "name": entry.name,
                "data_source": source,
                "formats": frozenset(fmt.lower() for fmt in entry.formats),
                "max_retries": entry.max_retries,
                "batch_size": entry.batch_size,
                "description": entry.description,
            }
            if entry.parameters_model:
                kwargs["parameters_model"] = load_object(entry.parameters_model)
            if entry.allowed_group_by is not None:
                kwargs["allowed_group_by"] = frozenset(entry.allowed_group_by)
            if entry.allowed_measures is not None:
                kwargs["allowed_measures"] = frozenset(entry.allowed_measures)

            registry.register(ReportTypeDefinition(**kwargs))
        return registry
