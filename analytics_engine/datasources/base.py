from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from analytics_engine.schemas import ChartDefinition, DashboardDefinition, DataSourceSchema

if TYPE_CHECKING:
    from analytics_engine.services.query_builder import SelectStatement


class DataExecutor(Protocol):
    async def execute(self, statement: SelectStatement) -> list[dict[str, Any]]: ...


class SchemaProvider(Protocol):
    async def get_schema(self, data_source_id: int) -> DataSourceSchema: ...


class DefinitionStore(Protocol):
    async def get_chart(self, chart_id: str) -> ChartDefinition: ...

    async def get_dashboard(self, dashboard_id: str) -> DashboardDefinition: ...


class HierarchyResolver(Protocol):
    async def resolve_partition_ids(self, organization_id: str) -> list[int]: ...
