import asyncio
import logging
from datetime import date

import pytest

from analytics_engine.errors import UnknownColumnError
from analytics_engine.schemas import (
    AccessScope,
    ChartError,
    DimensionValue,
    DimensionValueSelection,
    ExpandedChart,
    ExpandedChartMetadata,
    UniversalFilters,
)
from analytics_engine.services.dimension_expansion import aggregate_expanded
from analytics_engine.settings import Settings
from tests.fakes import (
    FakeDataExecutor,
    FakeDefinitionStore,
    FakeSchemaProvider,
    build_test_services,
    chart,
    sample_schema,
)

Q1 = UniversalFilters(start_date=date(2024, 1, 1), end_date=date(2024, 3, 31))


class _StaleDistinctExecutor(FakeDataExecutor):
    """Reports a value that no longer has rows by the time its chart renders."""

    async def execute(self, statement):
        if statement.distinct:
            self.statements.append(statement)
            return [{"value": "East"}, {"value": "North"}, {"value": "South"}]
        return await super().execute(statement)


def _location_predicate(statement, value: str) -> bool:
    return any(item.column == "location" and item.value == value for item in statement.where.predicates)


def _expand(scope: AccessScope, *, universal: UniversalFilters = Q1, limit: int | None = None, **service_kwargs):
    store = FakeDefinitionStore(charts=[chart("charges", "line")])
    services = build_test_services(store=store, **service_kwargs)
    return asyncio.run(services.expansion.expand_by_dimension("charges", "location", universal, scope, limit=limit))


def test_expansion_drops_values_without_rows(scope: AccessScope) -> None:
    result = _expand(scope, executor=_StaleDistinctExecutor())

    assert [item.dimension_value.value for item in result.charts] == ["North", "South"]
    assert result.metadata.discovered_values == 3
    assert result.metadata.zero_record_charts == 1
    assert result.metadata.total_charts == 2
    assert result.dimension.value_count == 3


def test_expansion_renders_one_chart_per_value_sorted_by_volume(scope: AccessScope) -> None:
    result = _expand(scope, universal=UniversalFilters())

    assert [item.dimension_value.value for item in result.charts] == ["North", "South", "East"]
    north = result.charts[0]
    assert north.metadata.record_count == 4
    assert north.dimension_value.record_count_hint == 4
    assert north.chart_data is not None
    assert north.chart_data.labels == ["2024-01-01", "2024-02-01", "2024-03-01"]
    assert north.chart_data.datasets[0].data == [100, 130, 90]
    assert result.dimension.display_name == "Location"
    assert result.metadata.parallel_execution is True


def test_discovery_limit_is_clamped(scope: AccessScope) -> None:
    for requested, expected in ((500, 51), (None, 21), (0, 2)):
        executor = FakeDataExecutor()
        _expand(scope, limit=requested, executor=executor)
        distinct = [statement for statement in executor.statements if statement.distinct]
        assert distinct[0].limit == expected


def test_discovery_truncates_to_limit_in_value_order(scope: AccessScope) -> None:
    result = _expand(scope, limit=1)

    assert [item.dimension_value.value for item in result.charts] == ["North"]
    assert result.metadata.discovered_values == 1


def test_expansion_rejects_columns_not_flagged_for_expansion(scope: AccessScope) -> None:
    for column in ("measure_value", "nope"):
        store = FakeDefinitionStore(charts=[chart("charges", "line")])
        services = build_test_services(store=store)
        with pytest.raises(UnknownColumnError):
            asyncio.run(services.expansion.expand_by_dimension("charges", column, Q1, scope))


def test_expansion_with_empty_scope_discovers_nothing() -> None:
    result = _expand(AccessScope(partition_ids=[]))

    assert result.charts == []
    assert result.metadata.discovered_values == 0


def test_failing_value_is_reported_after_successful_ones(scope: AccessScope) -> None:
    executor = FakeDataExecutor(
        fail_when=lambda statement: not statement.distinct and _location_predicate(statement, "North")
    )

    result = _expand(scope, executor=executor)

    assert [item.dimension_value.value for item in result.charts] == ["South", "North"]
    assert result.charts[1].error == ChartError(code="fetch_failed", message="Failed to load chart data")
    assert result.charts[1].chart_data is None
    assert result.metadata.errored_charts == 1


def test_slow_value_times_out_without_failing_the_rest(scope: AccessScope) -> None:
    executor = FakeDataExecutor(
        delay_when=lambda statement: 2.0 if _location_predicate(statement, "South") else 0.0
    )
    settings = Settings(environment="test", dimension_expansion_timeout_seconds=0.3)

    result = _expand(scope, executor=executor, settings=settings)

    assert [item.dimension_value.value for item in result.charts] == ["North", "South"]
    assert result.charts[0].error is None
    assert result.charts[1].error is not None
    assert result.charts[1].error.code == "timeout"


def test_list_expansion_dimensions() -> None:
    services = build_test_services()

    dimensions = asyncio.run(services.discovery.get_expansion_dimensions(1))

    assert [(item.column_name, item.display_name, item.data_source_id) for item in dimensions] == [
        ("location", "Location", 1)
    ]


def test_aggregate_expanded_orders_and_counts() -> None:
    def _chart(value: str, records: int, error: ChartError | None = None) -> ExpandedChart:
        return ExpandedChart(
            dimension_value=DimensionValue(value=value, label=value),
            error=error,
            metadata=ExpandedChartMetadata(record_count=records),
        )

    ordered, zero_records = aggregate_expanded(
        [
            _chart("a", 2),
            _chart("b", 0, ChartError(code="timeout", message="Chart rendering timed out")),
            _chart("c", 0),
            _chart("d", 7),
        ]
    )

    assert [item.dimension_value.value for item in ordered] == ["d", "a", "b"]
    assert zero_records == 1


def _two_dimension_services(**service_kwargs):
    schema = sample_schema()
    columns = [
        column.model_copy(update={"is_expansion_dimension": True}) if column.name == "provider_uid" else column
        for column in schema.columns
    ]
    return build_test_services(
        schema_provider=FakeSchemaProvider({1: schema.model_copy(update={"columns": columns})}),
        store=FakeDefinitionStore(charts=[chart("charges", "line")]),
        **service_kwargs,
    )


def test_selected_values_restrict_expansion_to_visible_values(scope: AccessScope) -> None:
    executor = FakeDataExecutor()
    store = FakeDefinitionStore(charts=[chart("charges", "line")])
    services = build_test_services(executor=executor, store=store)

    result = asyncio.run(
        services.expansion.expand_by_dimension("charges", "location", Q1, scope, selected_values=["South", "East"])
    )

    assert [item.dimension_value.value for item in result.charts] == ["South"]
    assert result.metadata.discovered_values == 1
    distinct = [statement for statement in executor.statements if statement.distinct]
    assert distinct[0].limit == 3


def test_expansion_over_value_combinations(scope: AccessScope) -> None:
    services = _two_dimension_services()

    result = asyncio.run(services.expansion.expand_by_dimensions("charges", ["location", "provider_uid"], Q1, scope))

    assert [item.dimension_value.label for item in result.charts] == [
        "North - 1",
        "North - 3",
        "South - 2",
        "South - 3",
    ]
    assert result.charts[0].dimension_value.values == {"location": "North", "provider_uid": 1}
    assert result.charts[0].chart_data is not None
    assert result.charts[0].chart_data.datasets[0].data == [100, 120]
    assert result.metadata.dimension_counts == {"location": 2, "provider_uid": 3}
    assert result.metadata.total_combinations == 6
    assert result.metadata.zero_record_charts == 2
    assert result.metadata.has_more is False
    assert [item.value_count for item in result.dimensions] == [2, 3]


def test_combination_pages_follow_offset_and_limit(scope: AccessScope) -> None:
    services = _two_dimension_services()

    result = asyncio.run(
        services.expansion.expand_by_dimensions("charges", ["location", "provider_uid"], Q1, scope, limit=2, offset=2)
    )

    assert [item.dimension_value.label for item in result.charts] == ["North - 3"]
    assert result.metadata.zero_record_charts == 1
    assert (result.metadata.offset, result.metadata.limit) == (2, 2)
    assert result.metadata.has_more is True


def test_selections_narrow_each_dimension(scope: AccessScope) -> None:
    services = _two_dimension_services()

    result = asyncio.run(
        services.expansion.expand_by_dimensions(
            "charges",
            ["location"],
            Q1,
            scope,
            selections=[DimensionValueSelection(column_name="provider_uid", selected_values=[3])],
        )
    )

    assert [item.dimension_value.label for item in result.charts] == ["North - 3", "South - 3"]
    assert result.metadata.dimension_counts == {"location": 2, "provider_uid": 1}


def test_combination_expansion_rejects_unflagged_columns(scope: AccessScope) -> None:
    services = _two_dimension_services()

    with pytest.raises(UnknownColumnError):
        asyncio.run(services.expansion.expand_by_dimensions("charges", ["location", "measure"], Q1, scope))


def test_expansion_logs_each_state(scope: AccessScope, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="uvicorn.error")

    _expand(scope)

    states = [
        record.args["state"]
        for record in caplog.records
        if str(record.msg).startswith("analytics.dimension.state")
    ]
    assert states == ["discovering", "expanding", "aggregating", "done"]
