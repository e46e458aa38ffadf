from __future__ import annotations

from datetime import date
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

FilterOperator = Literal["eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in", "between"]
Aggregation = Literal["sum", "avg", "count", "min", "max"]
StackingMode = Literal["normal", "stacked", "percentage"]
ComparisonType = Literal["previous_period", "same_period_last_year", "custom_period"]
ChartType = Literal[
    "line",
    "area",
    "bar",
    "stacked-bar",
    "horizontal-bar",
    "pie",
    "doughnut",
    "number",
    "table",
    "dual-axis",
]
DimensionScalar = Union[str, int, float, bool]


class FilterSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: FilterOperator
    value: Any | None = None


class ColumnDescriptor(BaseModel):
    name: str
    logical_role: str | None = None
    data_type: str = "text"
    display_name: str | None = None
    is_measure: bool = False
    is_measure_type: bool = False
    is_date_field: bool = False
    is_time_period: bool = False
    is_expansion_dimension: bool = False


class DataSourceSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    schema_name: str
    table_name: str
    columns: list[ColumnDescriptor] = Field(default_factory=list)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def column(self, name: str) -> ColumnDescriptor | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None


class AccessScope(BaseModel):
    """Partition identifiers a principal may read, resolved upstream.

    An empty ``partition_ids`` list denies everything unless ``unrestricted``
    is set explicitly.
    """

    model_config = ConfigDict(frozen=True)

    partition_ids: list[int] = Field(default_factory=list)
    secondary_entity_ids: list[int] | None = None
    unrestricted: bool = False
    principal_id: str | None = None


class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: date | None = None
    end: date | None = None


class ChartFilters(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    date_range_preset: str | None = None
    measure: str | None = None
    frequency: str | None = None
    partition_ids: list[int] | None = None
    advanced_filters: list[FilterSpec] = Field(default_factory=list)


class UniversalFilters(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    date_range_preset: str | None = None
    organization_id: str | None = None
    partition_ids: list[int] | None = None
    measure: str | None = None
    frequency: str | None = None
    advanced_filters: list[FilterSpec] = Field(default_factory=list)

    def applied_filter_names(self) -> list[str]:
        names: list[str] = []
        if self.start_date or self.end_date or self.date_range_preset:
            names.append("date_range")
        if self.organization_id:
            names.append("organization")
        if self.partition_ids is not None:
            names.append("partitions")
        if self.measure:
            names.append("measure")
        if self.frequency:
            names.append("frequency")
        if self.advanced_filters:
            names.append("advanced")
        return names


class SeriesDefinition(BaseModel):
    measure: str
    label: str | None = None
    aggregation: Aggregation = "sum"


class PeriodComparisonConfig(BaseModel):
    comparison_type: ComparisonType
    custom_period_offset: int | None = None
    label: str | None = None

    @model_validator(mode="after")
    def _check_offset(self) -> "PeriodComparisonConfig":
        if self.comparison_type == "custom_period" and (self.custom_period_offset or 0) < 1:
            raise ValueError("custom_period comparison requires custom_period_offset >= 1")
        return self


class SeriesChartOptions(BaseModel):
    chart_type: Literal["line", "area", "bar", "stacked-bar", "horizontal-bar"]
    group_by: str | None = None
    stacking_mode: StackingMode = "normal"
    aggregation: Aggregation = "sum"
    multiple_series: list[SeriesDefinition] = Field(default_factory=list)
    period_comparison: PeriodComparisonConfig | None = None
    color_palette: str = "default"


class PieChartOptions(BaseModel):
    chart_type: Literal["pie", "doughnut"]
    group_by: str | None = None
    aggregation: Aggregation = "sum"
    color_palette: str = "default"


class NumberChartOptions(BaseModel):
    chart_type: Literal["number"]
    aggregation: Aggregation = "sum"
    target: float | None = None


class TableChartOptions(BaseModel):
    chart_type: Literal["table"]
    columns: list[str] | None = None
    limit: int = 500


class DualAxisSeries(BaseModel):
    measure: str
    label: str | None = None
    render_as: Literal["bar", "line"] = "bar"
    aggregation: Aggregation = "sum"


class DualAxisChartOptions(BaseModel):
    chart_type: Literal["dual-axis"]
    primary: DualAxisSeries
    secondary: DualAxisSeries
    color_palette: str = "default"


ChartOptions = Annotated[
    Union[SeriesChartOptions, PieChartOptions, NumberChartOptions, TableChartOptions, DualAxisChartOptions],
    Field(discriminator="chart_type"),
]


class ChartDefinition(BaseModel):
    chart_id: str
    name: str | None = None
    chart_type: ChartType
    data_source_id: int
    stored_filters: ChartFilters = Field(default_factory=ChartFilters)
    options: ChartOptions
    is_active: bool = True

    @model_validator(mode="after")
    def _check_chart_type(self) -> "ChartDefinition":
        if self.options.chart_type != self.chart_type:
            raise ValueError("options.chart_type must match chart_type")
        return self


class DashboardFilterConfig(BaseModel):
    enabled: bool = True
    default_date_range_preset: str | None = None
    organization_id: str | None = None


class DashboardDefinition(BaseModel):
    dashboard_id: str
    name: str | None = None
    chart_ids: list[str] = Field(default_factory=list)
    filter_config: DashboardFilterConfig = Field(default_factory=DashboardFilterConfig)


class ChartExecutionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    chart_id: str
    chart_type: ChartType
    data_source_id: int
    merged_filters: tuple[FilterSpec, ...] = ()
    date_range: DateRange | None = None
    options: ChartOptions

    def filters_without(self, field: str) -> list[FilterSpec]:
        return [item for item in self.merged_filters if item.field != field]


class ChartDataset(BaseModel):
    label: str
    data: list[float | None] = Field(default_factory=list)
    type: Literal["line", "bar"] | None = None
    y_axis_id: str | None = None
    stack: str | None = None
    fill: bool | None = None


class ChartPayload(BaseModel):
    chart_type: str
    labels: list[str] = Field(default_factory=list)
    datasets: list[ChartDataset] = Field(default_factory=list)
    value: float | None = None
    target: float | None = None
    columns: list[str] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    measure_type: str | None = None


class ChartError(BaseModel):
    code: str
    message: str


class ChartRenderMetadata(BaseModel):
    record_count: int = 0
    query_time_ms: int = 0
    cache_hit: bool = False
    transform_ms: int = 0
    deduped: bool = False


class ChartRenderResult(BaseModel):
    chart_id: str
    chart_type: str
    data: ChartPayload
    metadata: ChartRenderMetadata


class BatchResult(BaseModel):
    chart_id: str
    data: ChartPayload | None = None
    error: ChartError | None = None
    metadata: ChartRenderMetadata | None = None


class DashboardRenderMetadata(BaseModel):
    total_query_time_ms: int = 0
    charts_rendered: int = 0
    charts_failed: int = 0
    unique_fetches: int = 0
    deduped_fetches: int = 0
    cache_hits: int = 0
    filters_applied: list[str] = Field(default_factory=list)


class DashboardRenderResult(BaseModel):
    dashboard_id: str
    results: list[BatchResult] = Field(default_factory=list)
    metadata: DashboardRenderMetadata = Field(default_factory=DashboardRenderMetadata)


class DimensionValue(BaseModel):
    value: DimensionScalar
    label: str
    record_count_hint: int | None = None


class ExpansionDimension(BaseModel):
    column_name: str
    display_name: str
    data_type: str
    data_source_id: int
    value_count: int | None = None


class ExpandedChartMetadata(BaseModel):
    record_count: int = 0
    query_time_ms: int = 0
    cache_hit: bool = False


class ExpandedChart(BaseModel):
    dimension_value: DimensionValue
    chart_data: ChartPayload | None = None
    error: ChartError | None = None
    metadata: ExpandedChartMetadata = Field(default_factory=ExpandedChartMetadata)


class DimensionExpansionMetadata(BaseModel):
    total_query_time_ms: int = 0
    discovered_values: int = 0
    total_charts: int = 0
    errored_charts: int = 0
    zero_record_charts: int = 0
    parallel_execution: bool = True


class DimensionExpansionResult(BaseModel):
    dimension: ExpansionDimension
    charts: list[ExpandedChart] = Field(default_factory=list)
    metadata: DimensionExpansionMetadata = Field(default_factory=DimensionExpansionMetadata)


class DimensionValueSelection(BaseModel):
    column_name: str
    selected_values: list[DimensionScalar] = Field(min_length=1)
    display_name: str | None = None


class DimensionValueCombination(BaseModel):
    values: dict[str, DimensionScalar]
    label: str
    record_count_hint: int | None = None


class CombinationChart(BaseModel):
    dimension_value: DimensionValueCombination
    chart_data: ChartPayload | None = None
    error: ChartError | None = None
    metadata: ExpandedChartMetadata = Field(default_factory=ExpandedChartMetadata)


class MultiDimensionExpansionMetadata(BaseModel):
    total_query_time_ms: int = 0
    total_charts: int = 0
    errored_charts: int = 0
    zero_record_charts: int = 0
    parallel_execution: bool = True
    dimension_counts: dict[str, int] = Field(default_factory=dict)
    total_combinations: int = 0
    offset: int = 0
    limit: int = 0
    has_more: bool = False


class MultiDimensionExpansionResult(BaseModel):
    dimensions: list[ExpansionDimension] = Field(default_factory=list)
    charts: list[CombinationChart] = Field(default_factory=list)
    metadata: MultiDimensionExpansionMetadata = Field(default_factory=MultiDimensionExpansionMetadata)


class RenderChartRequest(BaseModel):
    chart_id: str | None = None
    definition: ChartDefinition | None = None
    filters: UniversalFilters = Field(default_factory=UniversalFilters)

    @model_validator(mode="after")
    def _check_source(self) -> "RenderChartRequest":
        if (self.chart_id is None) == (self.definition is None):
            raise ValueError("Provide exactly one of chart_id or definition")
        return self


class ExpandChartRequest(BaseModel):
    dimension_column: str
    base_filters: UniversalFilters = Field(default_factory=UniversalFilters)
    limit: int | None = None
    selected_values: list[DimensionScalar] | None = None


class ExpandDimensionsRequest(BaseModel):
    dimension_columns: list[str] = Field(default_factory=list)
    selections: list[DimensionValueSelection] = Field(default_factory=list)
    base_filters: UniversalFilters = Field(default_factory=UniversalFilters)
    limit: int | None = None
    offset: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_dimensions(self) -> "ExpandDimensionsRequest":
        if not self.dimension_columns and not self.selections:
            raise ValueError("Provide dimension_columns or selections")
        selected = [selection.column_name for selection in self.selections]
        if len(selected) != len(set(selected)):
            raise ValueError("Each dimension may be selected once")
        return self


class RenderDashboardRequest(BaseModel):
    universal_filters: UniversalFilters = Field(default_factory=UniversalFilters)


class CacheInvalidateRequest(BaseModel):
    data_source_id: int | None = None
    prefix: str | None = None


class CacheInvalidateResponse(BaseModel):
    removed: int
