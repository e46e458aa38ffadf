import asyncio
from datetime import date

import pytest

from analytics_engine.errors import (
    ChartTypeNotFoundError,
    ExecutionTimeoutError,
    FetchError,
    InvalidChartConfigError,
    TransformError,
    UnknownColumnError,
)
from analytics_engine.schemas import AccessScope, DateRange, PeriodComparisonConfig, UniversalFilters
from analytics_engine.services.charts.base import comparison_range
from tests.fakes import FakeDataExecutor, FakeHierarchyResolver, build_test_services, chart

Q1 = UniversalFilters(start_date=date(2024, 1, 1), end_date=date(2024, 3, 31))
MONTHS = ["2024-01-01", "2024-02-01", "2024-03-01"]


def _render(definition, scope: AccessScope, *, universal: UniversalFilters = Q1, **service_kwargs):
    services = build_test_services(**service_kwargs)
    return asyncio.run(services.orchestrator.render_definition(definition, universal, scope))


def test_line_chart_sums_measure_per_period(scope: AccessScope) -> None:
    result = _render(chart("charges", "line"), scope)

    assert result.data.labels == MONTHS
    assert len(result.data.datasets) == 1
    dataset = result.data.datasets[0]
    assert dataset.label == "Charges"
    assert dataset.type == "line"
    assert dataset.data == [150, 200, 90]
    assert result.data.measure_type == "currency"
    assert result.metadata.record_count == 6


def test_bar_variants_share_rows_but_not_presentation(scope: AccessScope) -> None:
    bar = _render(chart("bar", "bar"), scope)
    stacked = _render(chart("stacked", "stacked-bar"), scope)
    area = _render(chart("area", "area"), scope)

    assert bar.data.datasets[0].type == "bar"
    assert bar.data.datasets[0].stack is None
    assert stacked.data.datasets[0].stack == "total"
    assert area.data.datasets[0].fill is True
    assert bar.data.datasets[0].data == stacked.data.datasets[0].data == area.data.datasets[0].data


def test_grouped_series_and_percentage_stacking(scope: AccessScope) -> None:
    grouped = _render(chart("grouped", "line", group_by="location"), scope)
    percent = _render(chart("percent", "bar", group_by="location", stacking_mode="percentage"), scope)

    assert [dataset.label for dataset in grouped.data.datasets] == ["North", "South"]
    assert grouped.data.datasets[0].data == [100, 130, 90]
    assert grouped.data.datasets[1].data == [50, 70, None]
    assert percent.data.datasets[0].data == [66.67, 65.0, 100.0]
    assert percent.data.datasets[1].data == [33.33, 35.0, 0.0]


def test_pie_chart_orders_slices_by_total(scope: AccessScope) -> None:
    result = _render(chart("pie", "pie", group_by="location"), scope)

    assert result.data.labels == ["North", "South"]
    assert result.data.datasets[0].data == [320, 120]


def test_number_chart_aggregates_and_carries_target(scope: AccessScope) -> None:
    result = _render(chart("kpi", "number", target=500), scope)

    assert result.data.value == 440
    assert result.data.target == 500


def test_table_chart_projects_requested_columns(scope: AccessScope) -> None:
    result = _render(chart("table", "table", columns=["date_index", "location", "measure_value"], limit=2), scope)

    assert result.data.columns == ["date_index", "location", "measure_value"]
    assert result.data.rows == [
        {"date_index": "2024-01-01", "location": "North", "measure_value": 100},
        {"date_index": "2024-01-01", "location": "South", "measure_value": 50},
    ]


def test_table_chart_returns_logical_columns_under_their_names(scope: AccessScope) -> None:
    result = _render(chart("table", "table", columns=["date", "measure_value", "location"], limit=2), scope)

    assert result.data.columns == ["date", "measure_value", "location"]
    assert result.data.rows == [
        {"date": "2024-01-01", "measure_value": 100, "location": "North"},
        {"date": "2024-01-01", "measure_value": 50, "location": "South"},
    ]


def test_handler_rejects_options_of_another_chart_type() -> None:
    services = build_test_services()

    async def scenario():
        config = await services.orchestrator.build_config(chart("charges", "line"), Q1)
        services.orchestrator.registry.dispatch("table").transform([], config)

    with pytest.raises(InvalidChartConfigError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.message == "Options for 'line' charts are invalid"


def test_dual_axis_chart_fetches_each_measure(scope: AccessScope) -> None:
    executor = FakeDataExecutor()
    definition = chart(
        "dual",
        "dual-axis",
        primary={"measure": "Charges", "render_as": "bar"},
        secondary={"measure": "Payments", "render_as": "line", "label": "Collected"},
    )

    result = _render(definition, scope, executor=executor)

    assert executor.calls == 2
    primary, secondary = result.data.datasets
    assert (primary.label, primary.type, primary.y_axis_id, primary.data) == ("Charges", "bar", "y", [150, 200, 90])
    assert (secondary.label, secondary.type, secondary.y_axis_id, secondary.data) == ("Collected", "line", "y1", [80, 60, None])


def test_multiple_series_render_one_dataset_per_measure(scope: AccessScope) -> None:
    definition = chart(
        "multi",
        "line",
        multiple_series=[{"measure": "Charges"}, {"measure": "Payments", "label": "Payments received"}],
    )

    result = _render(definition, scope)

    assert result.data.labels == MONTHS
    assert [dataset.label for dataset in result.data.datasets] == ["Charges", "Payments received"]
    assert result.data.datasets[1].data == [80, 60, None]


def test_period_comparison_adds_shifted_dataset(scope: AccessScope) -> None:
    definition = chart("compare", "line", period_comparison={"comparison_type": "previous_period"})
    universal = UniversalFilters(start_date=date(2024, 2, 1), end_date=date(2024, 3, 31))

    result = _render(definition, scope, universal=universal)

    assert result.data.labels == ["2024-02-01", "2024-03-01"]
    current, previous = result.data.datasets
    assert current.data == [200, 90]
    assert previous.label == "Previous period"
    assert previous.data == [150, None]


def test_comparison_range_handles_leap_day() -> None:
    shifted = comparison_range(
        DateRange(start=date(2024, 2, 1), end=date(2024, 2, 29)),
        PeriodComparisonConfig(comparison_type="same_period_last_year"),
    )

    assert (shifted.start, shifted.end) == (date(2023, 2, 1), date(2023, 2, 28))


def test_invalid_options_are_rejected_before_fetching(scope: AccessScope) -> None:
    executor = FakeDataExecutor()

    with pytest.raises(InvalidChartConfigError) as exc_info:
        _render(chart("pie", "pie"), scope, executor=executor)
    assert "group_by" in exc_info.value.message

    with pytest.raises(InvalidChartConfigError):
        _render(
            chart("compare", "line", period_comparison={"comparison_type": "previous_period"}),
            scope,
            universal=UniversalFilters(),
            executor=executor,
        )
    assert executor.calls == 0


def test_unknown_group_by_column_is_rejected(scope: AccessScope) -> None:
    with pytest.raises(UnknownColumnError):
        _render(chart("grouped", "line", group_by="ssn"), scope)


def test_unregistered_chart_type_is_reported() -> None:
    services = build_test_services()

    with pytest.raises(ChartTypeNotFoundError) as exc_info:
        services.registry.dispatch("radar")
    assert exc_info.value.status_code == 400
    assert "line" in services.registry.chart_types()


def test_non_numeric_measure_fails_transform(scope: AccessScope) -> None:
    executor = FakeDataExecutor(
        rows=[{"date_index": "2024-01-01", "measure": "Charges", "measure_value": "n/a", "time_period": "Monthly", "practice_uid": 100}]
    )

    with pytest.raises(TransformError):
        _render(chart("charges", "line"), scope, executor=executor)


def test_fetch_failures_do_not_leak_driver_details(scope: AccessScope) -> None:
    executor = FakeDataExecutor(fail_when=lambda _statement: True)

    with pytest.raises(FetchError) as exc_info:
        _render(chart("charges", "line"), scope, executor=executor)

    assert exc_info.value.code == "fetch_failed"
    assert "secret" not in exc_info.value.message
    assert "postgresql" not in exc_info.value.message


def test_empty_scope_renders_zero_rows() -> None:
    executor = FakeDataExecutor()

    result = _render(chart("kpi", "number"), AccessScope(partition_ids=[]), executor=executor)

    assert result.data.value is None
    assert result.metadata.record_count == 0
    assert -1 in executor.statements[0].params


def test_secondary_entity_scope_keeps_unattributed_rows() -> None:
    result = _render(chart("kpi", "number"), AccessScope(partition_ids=[100], secondary_entity_ids=[1]))

    assert result.data.value == 230


def test_organization_filter_narrows_within_scope(scope: AccessScope) -> None:
    hierarchy = FakeHierarchyResolver({"org-west": [200]})
    universal = Q1.model_copy(update={"organization_id": "org-west"})

    inside = _render(chart("kpi", "number"), scope, universal=universal, hierarchy=hierarchy)
    outside = _render(chart("kpi", "number"), AccessScope(partition_ids=[100]), universal=universal, hierarchy=hierarchy)

    assert inside.data.value == 160
    assert outside.data.value is None


def test_second_render_is_served_from_cache(scope: AccessScope) -> None:
    executor = FakeDataExecutor()
    services = build_test_services(executor=executor)
    definition = chart("charges", "line")

    async def scenario():
        first = await services.orchestrator.render_definition(definition, Q1, scope)
        second = await services.orchestrator.render_definition(definition, Q1, scope)
        other_scope = await services.orchestrator.render_definition(definition, Q1, AccessScope(partition_ids=[100]))
        return first, second, other_scope

    first, second, other_scope = asyncio.run(scenario())

    assert first.metadata.cache_hit is False
    assert second.metadata.cache_hit is True
    assert second.data == first.data
    assert other_scope.metadata.cache_hit is False
    assert executor.calls == 2


def test_concurrent_identical_renders_share_one_fetch(scope: AccessScope) -> None:
    executor = FakeDataExecutor(delay_when=lambda _statement: 0.05)
    services = build_test_services(executor=executor)
    definition = chart("charges", "line")

    async def scenario():
        return await asyncio.gather(
            *(services.orchestrator.render_definition(definition, Q1, scope) for _ in range(3))
        )

    results = asyncio.run(scenario())

    assert executor.calls == 1
    assert all(result.data == results[0].data for result in results)


def test_render_chart_times_out(scope: AccessScope) -> None:
    executor = FakeDataExecutor(delay_when=lambda _statement: 1.0)
    services = build_test_services(executor=executor)

    async def scenario():
        config = await services.orchestrator.build_config(chart("charges", "line"), Q1)
        return await services.orchestrator.render_chart(config, scope, timeout_seconds=0.05)

    with pytest.raises(ExecutionTimeoutError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.status_code == 504
