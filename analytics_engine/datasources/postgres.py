from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from psycopg import AsyncConnection
from pydantic import ValidationError

from analytics_engine.errors import (
    DefinitionNotFoundError,
    EngineError,
    ExecutionTimeoutError,
    FetchError,
    InvalidChartConfigError,
)
from analytics_engine.schemas import (
    ChartDefinition,
    ColumnDescriptor,
    DashboardDefinition,
    DashboardFilterConfig,
    DataSourceSchema,
)
from analytics_engine.services.query_builder import SelectStatement

logger = logging.getLogger("uvicorn.error")


def _redact_database_url(database_url: str) -> str:
    if "://" not in database_url or "@" not in database_url:
        return database_url
    scheme, remainder = database_url.split("://", 1)
    credentials, location = remainder.rsplit("@", 1)
    username = credentials.split(":", 1)[0] if credentials else ""
    return f"{scheme}://{username}:***@{location}"


def _normalize_cell(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


async def _fetch_dicts(
    database_url: str,
    sql: str,
    params: list[Any],
    *,
    timeout_seconds: float,
) -> list[dict[str, Any]]:
    conn: AsyncConnection[Any] | None = None
    try:
        conn = await AsyncConnection.connect(database_url)
        result = await asyncio.wait_for(conn.execute(sql, params), timeout=timeout_seconds)
        rows = await result.fetchall()
        columns = [desc[0] for desc in result.description or []]
        return [{column: _normalize_cell(row[idx]) for idx, column in enumerate(columns)} for row in rows]
    except asyncio.TimeoutError as exc:
        raise ExecutionTimeoutError("Query execution timed out") from exc
    except EngineError:
        raise
    except Exception as exc:
        logger.error(
            "analytics.datasource.error | %s",
            {"database": _redact_database_url(database_url), "reason": type(exc).__name__},
        )
        raise FetchError() from exc
    finally:
        if conn:
            await conn.close()


class PostgresDataExecutor:
    def __init__(self, database_url: str, *, timeout_seconds: float = 20) -> None:
        self._database_url = database_url
        self._timeout_seconds = timeout_seconds

    async def execute(self, statement: SelectStatement) -> list[dict[str, Any]]:
        return await _fetch_dicts(
            self._database_url,
            statement.to_sql(),
            statement.params,
            timeout_seconds=self._timeout_seconds,
        )


class PostgresSchemaProvider:
    def __init__(self, database_url: str, *, timeout_seconds: float = 15) -> None:
        self._database_url = database_url
        self._timeout_seconds = timeout_seconds

    async def get_schema(self, data_source_id: int) -> DataSourceSchema:
        sources = await _fetch_dicts(
            self._database_url,
            """
            SELECT data_source_id, schema_name, table_name
            FROM chart_data_sources
            WHERE data_source_id = %s AND is_active = true
            """,
            [data_source_id],
            timeout_seconds=self._timeout_seconds,
        )
        if not sources:
            raise DefinitionNotFoundError("data source", data_source_id)
        columns = await _fetch_dicts(
            self._database_url,
            """
            SELECT column_name, data_type, display_name, logical_role,
                   is_measure, is_measure_type, is_date_field, is_time_period, is_expansion_dimension
            FROM chart_data_source_columns
            WHERE data_source_id = %s AND is_active = true
            ORDER BY sort_order, column_id
            """,
            [data_source_id],
            timeout_seconds=self._timeout_seconds,
        )
        source = sources[0]
        return DataSourceSchema(
            id=int(source["data_source_id"]),
            schema_name=str(source["schema_name"]),
            table_name=str(source["table_name"]),
            columns=[
                ColumnDescriptor(
                    name=str(row["column_name"]),
                    data_type=str(row["data_type"] or "text"),
                    display_name=row.get("display_name"),
                    logical_role=row.get("logical_role"),
                    is_measure=bool(row.get("is_measure")),
                    is_measure_type=bool(row.get("is_measure_type")),
                    is_date_field=bool(row.get("is_date_field")),
                    is_time_period=bool(row.get("is_time_period")),
                    is_expansion_dimension=bool(row.get("is_expansion_dimension")),
                )
                for row in columns
            ],
        )


class PostgresDefinitionStore:
    def __init__(self, database_url: str, *, timeout_seconds: float = 15) -> None:
        self._database_url = database_url
        self._timeout_seconds = timeout_seconds

    async def get_chart(self, chart_id: str) -> ChartDefinition:
        rows = await _fetch_dicts(
            self._database_url,
            """
            SELECT chart_definition_id, chart_name, chart_type, data_source_id, stored_filters, chart_options, is_active
            FROM chart_definitions
            WHERE chart_definition_id = %s
            """,
            [chart_id],
            timeout_seconds=self._timeout_seconds,
        )
        if not rows or not rows[0].get("is_active", True):
            raise DefinitionNotFoundError("chart", chart_id)
        row = rows[0]
        try:
            return ChartDefinition.model_validate(
                {
                    "chart_id": str(row["chart_definition_id"]),
                    "name": row.get("chart_name"),
                    "chart_type": row["chart_type"],
                    "data_source_id": row["data_source_id"],
                    "stored_filters": row.get("stored_filters") or {},
                    "options": {**(row.get("chart_options") or {}), "chart_type": row["chart_type"]},
                }
            )
        except ValidationError as exc:
            raise InvalidChartConfigError([f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()]) from exc

    async def get_dashboard(self, dashboard_id: str) -> DashboardDefinition:
        rows = await _fetch_dicts(
            self._database_url,
            """
            SELECT dashboard_id, dashboard_name, filter_config
            FROM dashboards
            WHERE dashboard_id = %s AND is_active = true
            """,
            [dashboard_id],
            timeout_seconds=self._timeout_seconds,
        )
        if not rows:
            raise DefinitionNotFoundError("dashboard", dashboard_id)
        chart_rows = await _fetch_dicts(
            self._database_url,
            """
            SELECT chart_definition_id
            FROM dashboard_charts
            WHERE dashboard_id = %s
            ORDER BY position, chart_definition_id
            """,
            [dashboard_id],
            timeout_seconds=self._timeout_seconds,
        )
        row = rows[0]
        return DashboardDefinition(
            dashboard_id=str(row["dashboard_id"]),
            name=row.get("dashboard_name"),
            chart_ids=[str(item["chart_definition_id"]) for item in chart_rows],
            filter_config=DashboardFilterConfig.model_validate(row.get("filter_config") or {}),
        )


class PostgresHierarchyResolver:
    """Expands an organization into the partition ids of its whole subtree."""

    def __init__(self, database_url: str, *, timeout_seconds: float = 15) -> None:
        self._database_url = database_url
        self._timeout_seconds = timeout_seconds

    async def resolve_partition_ids(self, organization_id: str) -> list[int]:
        rows = await _fetch_dicts(
            self._database_url,
            """
            WITH RECURSIVE tree AS (
                SELECT organization_id, practice_uids
                FROM organizations
                WHERE organization_id = %s AND is_active = true
                UNION ALL
                SELECT child.organization_id, child.practice_uids
                FROM organizations child
                JOIN tree ON child.parent_organization_id = tree.organization_id
                WHERE child.is_active = true
            )
            SELECT DISTINCT unnest(practice_uids) AS partition_id
            FROM tree
            ORDER BY partition_id
            """,
            [organization_id],
            timeout_seconds=self._timeout_seconds,
        )
        return [int(row["partition_id"]) for row in rows if row.get("partition_id") is not None]
