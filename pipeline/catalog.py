"""
Warehouse catalog: physical tables and the role each column plays.

The engine addresses tables generically (dimension key column, business key
column, attribute columns, fact grain and measures), so every component
looks the layout up here instead of hard-coding a model.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import Table

from core.exceptions import ConfigurationError
from models.base import Base
from models.warehouse import DimCustomer, DimDate, DimProduct, DimSalesRep, FactSales
from schemas.config import CheckKind, DimensionConfig, FactConfig, PipelineConfig, QualityCheckConfig


@dataclass(frozen=True)
class DimensionTable:
    name: str
    model: type
    key_column: str
    business_key_column: str
    attribute_columns: Dict[str, str] = field(default_factory=dict)
    timestamp_column: str = "LastUpdated"
    version_column: str = "RowVersion"

    @property
    def table(self) -> Table:
        return self.model.__table__


@dataclass(frozen=True)
class FactTable:
    name: str
    model: type
    timestamp_column: str = "LastUpdated"

    @property
    def table(self) -> Table:
        return self.model.__table__


DATE_DIMENSION = DimDate.__table__
DATE_KEY_COLUMN = "DateKey"
UNKNOWN_BUSINESS_KEY = "UNKNOWN"

DIMENSION_TABLES: Dict[str, DimensionTable] = {
    "DimCustomer": DimensionTable(
        name="DimCustomer",
        model=DimCustomer,
        key_column="CustomerKey",
        business_key_column="BusinessCustomerId",
        attribute_columns={"name": "CustomerName", "city": "City", "country": "Country"},
    ),
    "DimProduct": DimensionTable(
        name="DimProduct",
        model=DimProduct,
        key_column="ProductKey",
        business_key_column="BusinessProductId",
        attribute_columns={"name": "ProductName", "category": "Category", "unit_price": "UnitPrice"},
    ),
    "DimSalesRep": DimensionTable(
        name="DimSalesRep",
        model=DimSalesRep,
        key_column="SalesRepKey",
        business_key_column="BusinessSalesRepId",
        attribute_columns={"name": "SalesRepName", "region": "Region"},
    ),
}

FACT_TABLES: Dict[str, FactTable] = {
    "FactSales": FactTable(name="FactSales", model=FactSales),
}


def get_table(name: str) -> Table:
    """Any warehouse table by its physical name."""
    table = Base.metadata.tables.get(name)
    if table is None:
        raise ConfigurationError(f"Unknown warehouse table: {name}", context={"table": name})
    return table


def dimension_table(dimension: DimensionConfig) -> DimensionTable:
    layout = DIMENSION_TABLES.get(dimension.table)
    if layout is None:
        raise ConfigurationError(
            f"Unknown dimension table: {dimension.table}",
            context={"entity_type": dimension.entity_type, "table": dimension.table}
        )
    if dimension.attributes:
        return DimensionTable(
            name=layout.name,
            model=layout.model,
            key_column=layout.key_column,
            business_key_column=layout.business_key_column,
            attribute_columns=dict(dimension.attributes),
            timestamp_column=layout.timestamp_column,
            version_column=layout.version_column,
        )
    return layout


def fact_table(fact: FactConfig) -> FactTable:
    layout = FACT_TABLES.get(fact.table)
    if layout is None:
        raise ConfigurationError(
            f"Unknown fact table: {fact.table}",
            context={"entity_type": fact.entity_type, "table": fact.table}
        )
    return layout


def validate_config(config: PipelineConfig) -> None:
    """
    Cross-check configuration against the physical catalog.

    Raises:
        ConfigurationError: On the first inconsistency found
    """
    dimension_types = set(config.dimension_entity_types)
    fact_types = set(config.fact_entity_types)

    for schema in config.sources:
        if schema.entity_type not in dimension_types | fact_types:
            raise ConfigurationError(
                f"Source {schema.source_system} feeds unknown entity type {schema.entity_type}",
                context={"source_system": schema.source_system, "entity_type": schema.entity_type}
            )
        if schema.entity_type in dimension_types and not schema.business_key_columns:
            raise ConfigurationError(
                f"Dimension source {schema.source_system}/{schema.entity_type} declares no business key",
                context={"source_system": schema.source_system, "entity_type": schema.entity_type}
            )
        for column in schema.columns:
            if column.code_map and config.code_map(column.code_map) is None:
                raise ConfigurationError(
                    f"Column {column.source_column} uses undefined code map {column.code_map}",
                    context={"source_system": schema.source_system, "code_map": column.code_map}
                )

    for dimension in config.dimensions:
        layout = dimension_table(dimension)
        for column in layout.attribute_columns.values():
            if column not in layout.table.c:
                raise ConfigurationError(
                    f"{layout.name} has no column {column}",
                    context={"table": layout.name, "column": column}
                )

    for fact in config.facts:
        table = fact_table(fact).table
        for name in [fact.date_column] + [r.name for r in fact.references] + list(fact.measures.values()):
            if name not in table.c:
                raise ConfigurationError(
                    f"{fact.table} has no column {name}",
                    context={"table": fact.table, "column": name}
                )
        grain = {fact.date_column} | {r.name for r in fact.references}
        primary_key = {c.name for c in table.primary_key.columns}
        if grain != primary_key:
            raise ConfigurationError(
                f"{fact.table} references do not cover its grain",
                context={"table": fact.table, "grain": sorted(primary_key), "configured": sorted(grain)}
            )
        for reference in fact.references:
            if reference.entity_type not in dimension_types:
                raise ConfigurationError(
                    f"{fact.table}.{reference.name} references unknown dimension {reference.entity_type}",
                    context={"table": fact.table, "reference": reference.name}
                )

    for check in config.quality_checks:
        table = get_table(check.table)
        if check.column and check.column not in table.c:
            raise ConfigurationError(
                f"Quality check {check.name}: {check.table} has no column {check.column}",
                context={"check": check.name}
            )
        if check.reference_table:
            reference = get_table(check.reference_table)
            if check.reference_column and check.reference_column not in reference.c:
                raise ConfigurationError(
                    f"Quality check {check.name}: {check.reference_table} has no column {check.reference_column}",
                    context={"check": check.name}
                )


def default_quality_checks(config: PipelineConfig) -> List[QualityCheckConfig]:
    """
    Strict checks derived from the star schema when none are configured:
    business-key uniqueness per dimension, referential integrity for every
    fact reference and non-null measures.
    """
    checks: List[QualityCheckConfig] = []
    dimensions_by_entity = {d.entity_type: d for d in config.dimensions}

    for dimension in config.dimensions:
        layout = dimension_table(dimension)
        checks.append(QualityCheckConfig(
            name=f"{layout.name}.{layout.business_key_column}.unique",
            kind=CheckKind.UNIQUE_BUSINESS_KEY,
            table=layout.name,
            column=layout.business_key_column,
        ))

    for fact in config.facts:
        checks.append(QualityCheckConfig(
            name=f"{fact.table}.{fact.date_column}.references.DimDate",
            kind=CheckKind.REFERENTIAL_INTEGRITY,
            table=fact.table,
            column=fact.date_column,
            reference_table=DATE_DIMENSION.name,
            reference_column=DATE_KEY_COLUMN,
        ))
        for reference in fact.references:
            dimension = dimensions_by_entity[reference.entity_type]
            layout = dimension_table(dimension)
            checks.append(QualityCheckConfig(
                name=f"{fact.table}.{reference.name}.references.{layout.name}",
                kind=CheckKind.REFERENTIAL_INTEGRITY,
                table=fact.table,
                column=reference.name,
                reference_table=layout.name,
                reference_column=layout.key_column,
                sentinel_key=dimension.unknown_member_key,
            ))
        for column in fact.measures.values():
            checks.append(QualityCheckConfig(
                name=f"{fact.table}.{column}.not_null",
                kind=CheckKind.NOT_NULL,
                table=fact.table,
                column=column,
                threshold=None,
            ))
    return checks


def reference_key_column(table_name: str) -> Optional[str]:
    """Surrogate key column of a referenced table, for RI checks without an explicit column."""
    if table_name == DATE_DIMENSION.name:
        return DATE_KEY_COLUMN
    layout = DIMENSION_TABLES.get(table_name)
    return layout.key_column if layout else None


def business_key_column(table_name: str) -> Optional[str]:
    layout = DIMENSION_TABLES.get(table_name)
    return layout.business_key_column if layout else None
