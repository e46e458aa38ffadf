from __future__ import annotations

import uuid


class EngineError(Exception):
    def __init__(self, *, status_code: int, code: str, message: str, error_id: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.error_id = error_id or str(uuid.uuid4())


class MappingError(EngineError):
    """Data source schema cannot be resolved to the required logical roles."""

    def __init__(self, message: str, *, data_source_id: int | None = None, role: str | None = None) -> None:
        super().__init__(status_code=422, code="mapping_incomplete", message=message)
        self.data_source_id = data_source_id
        self.role = role


class UnknownColumnError(EngineError):
    def __init__(self, column: str, *, data_source_id: int | None = None) -> None:
        super().__init__(
            status_code=400,
            code="unknown_column",
            message=f"Column '{column}' is not available on this data source",
        )
        self.column = column
        self.data_source_id = data_source_id


class InvalidFilterError(EngineError):
    def __init__(self, message: str) -> None:
        super().__init__(status_code=400, code="invalid_filter", message=message)


class AccessDeniedEmptyScope(EngineError):
    """Raised only when a caller opts out of the zero-row rendition of an empty scope."""

    def __init__(self) -> None:
        super().__init__(status_code=403, code="access_denied_empty_scope", message="No accessible partitions")


class FetchError(EngineError):
    def __init__(self, message: str = "Failed to load chart data") -> None:
        super().__init__(status_code=502, code="fetch_failed", message=message)


class TransformError(EngineError):
    def __init__(self, message: str) -> None:
        super().__init__(status_code=422, code="transform_failed", message=message)


class ExecutionTimeoutError(EngineError):
    def __init__(self, message: str = "Chart rendering timed out") -> None:
        super().__init__(status_code=504, code="timeout", message=message)


class ChartTypeNotFoundError(EngineError):
    def __init__(self, chart_type: str) -> None:
        super().__init__(
            status_code=400,
            code="chart_type_not_found",
            message=f"No handler registered for chart type '{chart_type}'",
        )
        self.chart_type = chart_type


class InvalidChartConfigError(EngineError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__(status_code=400, code="invalid_chart_config", message="; ".join(errors))
        self.errors = errors


class DefinitionNotFoundError(EngineError):
    def __init__(self, kind: str, identifier: object) -> None:
        super().__init__(status_code=404, code="not_found", message=f"{kind.capitalize()} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier
