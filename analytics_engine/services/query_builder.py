from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from analytics_engine.errors import InvalidFilterError
from analytics_engine.schemas import AccessScope, DataSourceSchema, FilterSpec
from analytics_engine.services.column_mapping import ColumnMapping
from analytics_engine.services.filters import PARTITION_SENTINEL, EmptyScopePolicy, build_partition_filter

logger = logging.getLogger("uvicorn.error")

_COMPARISONS = {"eq": "=", "neq": "<>", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}


def _quote_ident(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _qualified_name(schema_name: str, table_name: str) -> str:
    return f"{_quote_ident(schema_name)}.{_quote_ident(table_name)}"


@dataclass(frozen=True, slots=True)
class Predicate:
    """A filter bound to a physical column.

    ``in_or_null`` and ``deny`` only come from access scoping, never from
    caller-supplied filters.
    """

    column: str | None
    operator: str
    value: Any = None


@dataclass(frozen=True, slots=True)
class BuiltQuery:
    where_clause: str
    params: list[Any]
    predicates: tuple[Predicate, ...] = ()


@dataclass(frozen=True, slots=True)
class SelectColumn:
    name: str
    alias: str | None = None


@dataclass(frozen=True, slots=True)
class SelectStatement:
    schema_name: str
    table_name: str
    columns: tuple[SelectColumn, ...]
    where: BuiltQuery = field(default_factory=lambda: BuiltQuery(where_clause="", params=[]))
    order_by: tuple[str, ...] = ()
    distinct: bool = False
    limit: int | None = None

    @property
    def params(self) -> list[Any]:
        return list(self.where.params)

    def to_sql(self) -> str:
        select_parts: list[str] = []
        for column in self.columns:
            if column.alias and column.alias != column.name:
                select_parts.append(f"{_quote_ident(column.name)} AS {_quote_ident(column.alias)}")
            else:
                select_parts.append(_quote_ident(column.name))
        keyword = "SELECT DISTINCT" if self.distinct else "SELECT"
        query_parts = [f"{keyword} {', '.join(select_parts)}", f"FROM {_qualified_name(self.schema_name, self.table_name)}"]
        if self.where.where_clause:
            query_parts.append(f"WHERE {self.where.where_clause}")
        if self.order_by:
            query_parts.append("ORDER BY " + ", ".join(_quote_ident(item) for item in self.order_by))
        if self.limit is not None:
            query_parts.append(f"LIMIT {int(self.limit)}")
        return " ".join(query_parts)


def _render_predicate(predicate: Predicate) -> tuple[str, list[Any]]:
    if predicate.operator == "deny":
        return "FALSE", []
    column = _quote_ident(predicate.column or "")
    op = predicate.operator
    value = predicate.value
    if op in _COMPARISONS:
        return f"{column} {_COMPARISONS[op]} %s", [value]
    if op in {"in", "not_in"}:
        values = list(value)
        if not values:
            return ("FALSE" if op == "in" else "TRUE"), []
        placeholders = ", ".join(["%s"] * len(values))
        operator = "IN" if op == "in" else "NOT IN"
        return f"{column} {operator} ({placeholders})", values
    if op == "between":
        return f"{column} BETWEEN %s AND %s", [value[0], value[1]]
    if op == "in_or_null":
        values = list(value) or [PARTITION_SENTINEL]
        placeholders = ", ".join(["%s"] * len(values))
        return f"({column} IS NULL OR {column} IN ({placeholders}))", values
    raise InvalidFilterError(f"Unsupported filter operator '{op}'")


class RBACQueryBuilder:
    def __init__(self, mapping: ColumnMapping, *, empty_policy: EmptyScopePolicy = "zero_rows") -> None:
        self._mapping = mapping
        self._empty_policy = empty_policy

    def scope_predicates(self, scope: AccessScope) -> list[Predicate]:
        if scope.unrestricted:
            return []
        predicates: list[Predicate] = []
        partition_filter = build_partition_filter(scope.partition_ids, empty_policy=self._empty_policy)
        if self._mapping.partition_field is None:
            logger.warning(
                "analytics.security.scope_unenforceable | %s",
                {"data_source_id": self._mapping.data_source_id, "role": "partition", "failed_closed": True},
            )
            predicates.append(Predicate(column=None, operator="deny"))
        elif partition_filter is not None:
            predicates.append(Predicate(column=self._mapping.partition_field, operator="in", value=partition_filter.value))

        if scope.secondary_entity_ids is not None:
            if self._mapping.secondary_entity_field is None:
                logger.warning(
                    "analytics.security.scope_unenforceable | %s",
                    {"data_source_id": self._mapping.data_source_id, "role": "secondary_entity", "failed_closed": True},
                )
                predicates.append(Predicate(column=None, operator="deny"))
            else:
                predicates.append(
                    Predicate(
                        column=self._mapping.secondary_entity_field,
                        operator="in_or_null",
                        value=sorted(set(scope.secondary_entity_ids)),
                    )
                )
        return predicates

    def build(self, filters: list[FilterSpec], scope: AccessScope) -> BuiltQuery:
        predicates = [
            Predicate(column=self._mapping.physical(item.field), operator=item.operator, value=item.value)
            for item in filters
        ]
        predicates.extend(self.scope_predicates(scope))

        where_parts: list[str] = []
        params: list[Any] = []
        for predicate in predicates:
            sql, values = _render_predicate(predicate)
            where_parts.append(sql)
            params.extend(values)
        return BuiltQuery(where_clause=" AND ".join(where_parts), params=params, predicates=tuple(predicates))


def measure_rows_statement(
    schema: DataSourceSchema,
    mapping: ColumnMapping,
    where: BuiltQuery,
    *,
    extra_columns: tuple[str, ...] = (),
    limit: int | None = None,
) -> SelectStatement:
    columns = [
        SelectColumn(mapping.date_field, "date_index"),
        SelectColumn(mapping.measure_value_field, "measure_value"),
    ]
    if mapping.measure_type_field:
        columns.append(SelectColumn(mapping.measure_type_field, "measure_type"))
    if mapping.time_period_field:
        columns.append(SelectColumn(mapping.time_period_field, "time_period"))
    aliases = {column.alias or column.name for column in columns}
    for name in extra_columns:
        physical = mapping.physical(name)
        if name not in aliases:
            columns.append(SelectColumn(physical, name))
            aliases.add(name)
    return SelectStatement(
        schema_name=schema.schema_name,
        table_name=schema.table_name,
        columns=tuple(columns),
        where=where,
        order_by=(mapping.date_field,),
        limit=limit,
    )


def table_rows_statement(
    schema: DataSourceSchema,
    mapping: ColumnMapping,
    where: BuiltQuery,
    *,
    columns: tuple[str, ...] = (),
    limit: int | None = None,
) -> SelectStatement:
    if columns:
        selected = tuple(SelectColumn(mapping.physical(name), name) for name in columns)
    else:
        selected = tuple(SelectColumn(name) for name in schema.column_names)
    return SelectStatement(
        schema_name=schema.schema_name,
        table_name=schema.table_name,
        columns=selected,
        where=where,
        order_by=(mapping.date_field,),
        limit=limit,
    )


def distinct_values_statement(
    schema: DataSourceSchema,
    column: str,
    where: BuiltQuery,
    *,
    limit: int,
) -> SelectStatement:
    return SelectStatement(
        schema_name=schema.schema_name,
        table_name=schema.table_name,
        columns=(SelectColumn(column, "value"),),
        where=where,
        order_by=(column,),
        distinct=True,
        limit=limit,
    )
