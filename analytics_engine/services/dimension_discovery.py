from __future__ import annotations

import logging
from typing import Any

from analytics_engine.errors import UnknownColumnError
from analytics_engine.schemas import AccessScope, DateRange, DimensionValue, ExpansionDimension, FilterSpec
from analytics_engine.services.charts.base import label_for
from analytics_engine.services.query_executor import AnalyticsQueryExecutor

logger = logging.getLogger("uvicorn.error")


def _scalar(value: Any) -> str | int | float | bool:
    if isinstance(value, (str, int, float, bool)):
        return value
    return label_for(value)


class DimensionDiscoveryService:
    def __init__(
        self,
        executor: AnalyticsQueryExecutor,
        *,
        default_limit: int = 20,
        max_limit: int = 50,
    ) -> None:
        self._executor = executor
        self._default_limit = default_limit
        self._max_limit = max_limit

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._default_limit
        return max(1, min(int(limit), self._max_limit))

    async def get_expansion_dimensions(self, data_source_id: int) -> list[ExpansionDimension]:
        resolved = await self._executor.mapping_resolver.load(data_source_id)
        return [
            ExpansionDimension(
                column_name=column.name,
                display_name=column.display_name or column.name.replace("_", " ").title(),
                data_type=column.data_type,
                data_source_id=data_source_id,
            )
            for column in resolved.schema.columns
            if column.is_expansion_dimension
        ]

    async def describe(self, data_source_id: int, column: str) -> ExpansionDimension:
        resolved = await self._executor.mapping_resolver.load(data_source_id)
        descriptor = resolved.schema.column(column)
        if descriptor is None or not descriptor.is_expansion_dimension:
            raise UnknownColumnError(column, data_source_id=data_source_id)
        return ExpansionDimension(
            column_name=descriptor.name,
            display_name=descriptor.display_name or descriptor.name.replace("_", " ").title(),
            data_type=descriptor.data_type,
            data_source_id=data_source_id,
        )

    async def get_values(
        self,
        data_source_id: int,
        column: str,
        base_filters: list[FilterSpec],
        scope: AccessScope,
        limit: int | None = None,
        *,
        date_range: DateRange | None = None,
    ) -> list[DimensionValue]:
        """Distinct values of an expansion column under the caller's scope and filters.

        At most ``limit`` values come back, in ascending value order. One extra
        row is requested so truncation can be detected and logged.
        """
        await self.describe(data_source_id, column)
        capped = self.clamp_limit(limit)
        result = await self._executor.fetch_distinct(
            data_source_id=data_source_id,
            column=column,
            filters=list(base_filters),
            scope=scope,
            limit=capped + 1,
            date_range=date_range,
        )
        values = [row.get("value") for row in result.rows if row.get("value") is not None]
        if len(values) > capped:
            logger.warning(
                "analytics.dimension.truncated | %s",
                {"data_source_id": data_source_id, "column": column, "limit": capped},
            )
            values = values[:capped]
        return [DimensionValue(value=_scalar(value), label=label_for(value)) for value in values]
