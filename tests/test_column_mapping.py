import asyncio

import pytest

from analytics_engine.errors import MappingError, UnknownColumnError
from analytics_engine.schemas import ColumnDescriptor, DataSourceSchema
from analytics_engine.services.column_mapping import ColumnMappingResolver, resolve_column_mapping
from tests.fakes import FakeSchemaProvider, sample_schema


def test_resolve_column_mapping_skips_time_period_for_date_role() -> None:
    mapping = resolve_column_mapping(sample_schema())

    assert mapping.date_field == "date_index"
    assert mapping.time_period_field == "time_period"
    assert mapping.measure_value_field == "measure_value"
    assert mapping.measure_type_field == "measure_type"
    assert mapping.partition_field == "practice_uid"
    assert mapping.secondary_entity_field == "provider_uid"


def test_physical_rejects_undeclared_columns() -> None:
    mapping = resolve_column_mapping(sample_schema())

    assert mapping.physical("location") == "location"
    assert mapping.physical("date") == "date_index"
    with pytest.raises(UnknownColumnError) as exc_info:
        mapping.physical('location"; DROP TABLE users; --')
    assert exc_info.value.code == "unknown_column"
    assert exc_info.value.status_code == 400


def test_resolve_column_mapping_requires_measure_column() -> None:
    schema = DataSourceSchema(
        id=7,
        schema_name="analytics",
        table_name="visits",
        columns=[ColumnDescriptor(name="visit_date", is_date_field=True)],
    )

    with pytest.raises(MappingError) as exc_info:
        resolve_column_mapping(schema)

    assert exc_info.value.code == "mapping_incomplete"
    assert exc_info.value.role == "measure_value"
    assert exc_info.value.data_source_id == 7


def test_resolve_column_mapping_falls_back_to_default_partition_column() -> None:
    schema = DataSourceSchema(
        id=3,
        schema_name="analytics",
        table_name="claims",
        columns=[
            ColumnDescriptor(name="claim_date", is_date_field=True),
            ColumnDescriptor(name="amount", is_measure=True),
            ColumnDescriptor(name="practice_uid", data_type="integer"),
        ],
    )

    mapping = resolve_column_mapping(schema, default_partition_column="practice_uid", default_secondary_entity_column="provider_uid")

    assert mapping.partition_field == "practice_uid"
    assert mapping.secondary_entity_field is None
    with pytest.raises(UnknownColumnError):
        mapping.physical("secondary_entity")


def test_first_declared_date_column_wins() -> None:
    schema = DataSourceSchema(
        id=4,
        schema_name="analytics",
        table_name="claims",
        columns=[
            ColumnDescriptor(name="service_date", is_date_field=True),
            ColumnDescriptor(name="posted_date", is_date_field=True),
            ColumnDescriptor(name="amount", is_measure=True),
        ],
    )

    assert resolve_column_mapping(schema).date_field == "service_date"


def test_resolver_caches_until_invalidated() -> None:
    provider = FakeSchemaProvider()
    resolver = ColumnMappingResolver(provider, ttl_seconds=300)

    async def scenario() -> None:
        first = await resolver.load(1)
        second = await resolver.load(1)
        assert first is second
        assert provider.calls == 1

        await resolver.invalidate(1)
        await resolver.load(1)
        assert provider.calls == 2

    asyncio.run(scenario())


def test_resolver_does_not_cache_incomplete_mappings() -> None:
    provider = FakeSchemaProvider(
        {
            9: DataSourceSchema(
                id=9,
                schema_name="analytics",
                table_name="broken",
                columns=[ColumnDescriptor(name="amount", is_measure=True)],
            )
        }
    )
    resolver = ColumnMappingResolver(provider, ttl_seconds=300)

    async def scenario() -> None:
        for _ in range(2):
            with pytest.raises(MappingError):
                await resolver.load(9)

    asyncio.run(scenario())
    assert provider.calls == 2
