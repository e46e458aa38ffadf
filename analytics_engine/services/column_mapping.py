from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from analytics_engine.datasources.base import SchemaProvider
from analytics_engine.errors import MappingError, UnknownColumnError
from analytics_engine.schemas import ColumnDescriptor, DataSourceSchema

logger = logging.getLogger("uvicorn.error")

LOGICAL_FIELDS = ("date", "measure_value", "measure_type", "time_period", "partition", "secondary_entity")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ColumnMapping:
    data_source_id: int
    date_field: str
    measure_value_field: str
    measure_type_field: str | None = None
    time_period_field: str | None = None
    partition_field: str | None = None
    secondary_entity_field: str | None = None
    allowed_columns: frozenset[str] = field(default_factory=frozenset)

    def logical(self, name: str) -> str | None:
        return {
            "date": self.date_field,
            "measure_value": self.measure_value_field,
            "measure_type": self.measure_type_field,
            "time_period": self.time_period_field,
            "partition": self.partition_field,
            "secondary_entity": self.secondary_entity_field,
        }.get(name)

    def physical(self, name: str) -> str:
        """Translate a logical or declared field name into a physical column.

        Anything that is neither a mapped logical role nor a declared column is
        rejected.
        """
        if name in LOGICAL_FIELDS:
            column = self.logical(name)
            if column is None:
                raise UnknownColumnError(name, data_source_id=self.data_source_id)
            return column
        if name not in self.allowed_columns:
            raise UnknownColumnError(name, data_source_id=self.data_source_id)
        return name


def _first(columns: list[ColumnDescriptor], predicate) -> ColumnDescriptor | None:
    for column in columns:
        if predicate(column):
            return column
    return None


def resolve_column_mapping(
    schema: DataSourceSchema,
    *,
    default_partition_column: str | None = None,
    default_secondary_entity_column: str | None = None,
) -> ColumnMapping:
    columns = list(schema.columns)
    names = {column.name for column in columns}

    time_period = _first(columns, lambda column: column.is_time_period or column.logical_role == "time_period")
    time_period_name = time_period.name if time_period else None
    date = _first(
        columns,
        lambda column: (column.is_date_field or column.logical_role == "date") and column.name != time_period_name,
    )
    if date is None:
        raise MappingError(
            f"Data source {schema.id} has no date column",
            data_source_id=schema.id,
            role="date",
        )

    measure = _first(columns, lambda column: column.is_measure or column.logical_role == "measure_value")
    if measure is None:
        raise MappingError(
            f"Data source {schema.id} has no measure value column",
            data_source_id=schema.id,
            role="measure_value",
        )
    measure_type = _first(columns, lambda column: column.is_measure_type or column.logical_role == "measure_type")

    partition = _first(columns, lambda column: column.logical_role == "partition")
    partition_name = partition.name if partition else None
    if partition_name is None and default_partition_column in names:
        partition_name = default_partition_column

    secondary = _first(columns, lambda column: column.logical_role == "secondary_entity")
    secondary_name = secondary.name if secondary else None
    if secondary_name is None and default_secondary_entity_column in names:
        secondary_name = default_secondary_entity_column

    return ColumnMapping(
        data_source_id=schema.id,
        date_field=date.name,
        measure_value_field=measure.name,
        measure_type_field=measure_type.name if measure_type else None,
        time_period_field=time_period_name,
        partition_field=partition_name,
        secondary_entity_field=secondary_name,
        allowed_columns=frozenset(names),
    )


@dataclass(slots=True)
class ResolvedDataSource:
    schema: DataSourceSchema
    mapping: ColumnMapping
    updated_at: datetime


class ColumnMappingResolver:
    def __init__(
        self,
        schema_provider: SchemaProvider,
        *,
        ttl_seconds: int,
        default_partition_column: str | None = None,
        default_secondary_entity_column: str | None = None,
    ) -> None:
        self._schema_provider = schema_provider
        self._ttl_seconds = ttl_seconds
        self._default_partition_column = default_partition_column
        self._default_secondary_entity_column = default_secondary_entity_column
        self._lock = asyncio.Lock()
        self._items: dict[int, ResolvedDataSource] = {}

    def resolve(self, schema: DataSourceSchema) -> ColumnMapping:
        return resolve_column_mapping(
            schema,
            default_partition_column=self._default_partition_column,
            default_secondary_entity_column=self._default_secondary_entity_column,
        )

    async def load(self, data_source_id: int) -> ResolvedDataSource:
        async with self._lock:
            item = self._items.get(data_source_id)
            if item is not None and item.updated_at + timedelta(seconds=self._ttl_seconds) > _utcnow():
                return item
            self._items.pop(data_source_id, None)

        schema = await self._schema_provider.get_schema(data_source_id)
        try:
            mapping = self.resolve(schema)
        except MappingError:
            logger.error("analytics.mapping.incomplete | %s", {"data_source_id": data_source_id})
            raise
        resolved = ResolvedDataSource(schema=schema, mapping=mapping, updated_at=_utcnow())
        async with self._lock:
            self._items[data_source_id] = resolved
        return resolved

    async def invalidate(self, data_source_id: int | None = None) -> None:
        async with self._lock:
            if data_source_id is None:
                self._items.clear()
            else:
                self._items.pop(data_source_id, None)
