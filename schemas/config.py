"""
Pipeline configuration: source schemas, code maps, survivorship rules,
dimension sentinels, fact references and quality checks.

Loaded from YAML and passed to every component through the run context.

Expected YAML format:
```yaml
sources:
  - source_system: crm
    entity_type: customer
    columns:
      - {source_column: id, type: integer, business_key: true}
      - {source_column: name}
      - {source_column: country_code, target: country, type: code, case: upper, code_map: country}

code_maps:
  - name: country
    mappings:
      "*": {US: US, USA: US}

survivorship:
  customer:
    default: [crm, erp]
    attributes:
      country: [erp, crm]

dimensions:
  - {entity_type: customer, table: DimCustomer, unknown_member_key: -1}

facts:
  - entity_type: sales
    table: FactSales
    date_attribute: date
    references:
      - {name: CustomerKey, entity_type: customer, attribute: customer, required: true}
    measures: {quantity: Quantity, amount: Amount}

quality_checks:
  - {name: amount_non_negative, kind: range, table: FactSales, column: Amount, min_value: 0, threshold: 0}
```
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError


class ColumnType(str, Enum):
    STRING = "string"
    CODE = "code"
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"


class CaseRule(str, Enum):
    NONE = "none"
    UPPER = "upper"
    LOWER = "lower"
    TITLE = "title"


class ColumnRule(BaseModel):
    """How one raw column becomes one typed attribute"""
    source_column: str = Field(..., min_length=1)
    target: Optional[str] = None
    type: ColumnType = ColumnType.STRING
    mandatory: bool = False
    business_key: bool = False
    case: CaseRule = CaseRule.NONE
    code_map: Optional[str] = None
    date_format: Optional[str] = None

    @property
    def attribute(self) -> str:
        return self.target or self.source_column

    @property
    def required(self) -> bool:
        return self.mandatory or self.business_key


class SourceSchema(BaseModel):
    """Declared schema of one (source system, entity type) extract"""
    source_system: str = Field(..., min_length=1, max_length=100)
    entity_type: str = Field(..., min_length=1, max_length=100)
    columns: List[ColumnRule] = Field(..., min_length=1)

    @property
    def business_key_columns(self) -> List[ColumnRule]:
        return [c for c in self.columns if c.business_key]

    @model_validator(mode="after")
    def unique_attributes(self):
        seen = set()
        for column in self.columns:
            if column.attribute in seen:
                raise ValueError(
                    f"{self.source_system}/{self.entity_type}: attribute "
                    f"'{column.attribute}' declared twice"
                )
            seen.add(column.attribute)
        return self


class CodeMap(BaseModel):
    """
    Source code -> conformed vocabulary.

    ``mappings`` is keyed by source system, with "*" applying to every
    source. Matching is case-insensitive on the trimmed code.
    """
    name: str
    mappings: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    def translate(self, source_system: str, code: str) -> Optional[str]:
        needle = code.strip().casefold()
        for scope in (source_system, "*"):
            for raw, conformed in self.mappings.get(scope, {}).items():
                if raw.strip().casefold() == needle:
                    return conformed
        return None


class SurvivorshipRule(BaseModel):
    """Source priority (highest first), per attribute with an entity default"""
    default: List[str] = Field(default_factory=list)
    attributes: Dict[str, List[str]] = Field(default_factory=dict)

    def priority_for(self, attribute: str) -> List[str]:
        return self.attributes.get(attribute, self.default)


class DimensionConfig(BaseModel):
    entity_type: str
    table: str
    unknown_member_key: int = -1
    # golden attribute -> physical column; defaults come from the catalog
    attributes: Optional[Dict[str, str]] = None


class FactReference(BaseModel):
    """One dimension reference of a fact: grain column <- business key attribute"""
    name: str
    entity_type: str
    attribute: str
    required: bool = True


class FactConfig(BaseModel):
    entity_type: str
    table: str
    date_attribute: str
    date_column: str = "DateKey"
    references: List[FactReference] = Field(default_factory=list)
    # clean attribute -> physical measure column
    measures: Dict[str, str] = Field(default_factory=dict)


class CheckKind(str, Enum):
    UNIQUE_BUSINESS_KEY = "unique_business_key"
    REFERENTIAL_INTEGRITY = "referential_integrity"
    NOT_NULL = "not_null"
    RANGE = "range"


class QualityCheckConfig(BaseModel):
    """
    One post-load invariant check.

    threshold: failed rows tolerated before the run fails; None means the
    check is advisory only.
    """
    name: str
    kind: CheckKind
    table: str
    column: Optional[str] = None
    reference_table: Optional[str] = None
    reference_column: Optional[str] = None
    sentinel_key: Optional[int] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    threshold: Optional[int] = 0
    sample_size: int = Field(default=5, ge=0, le=100)

    @model_validator(mode="after")
    def check_arguments(self):
        if self.kind in (CheckKind.NOT_NULL, CheckKind.RANGE, CheckKind.REFERENTIAL_INTEGRITY) and not self.column:
            raise ValueError(f"check '{self.name}' ({self.kind.value}) needs a column")
        if self.kind == CheckKind.REFERENTIAL_INTEGRITY and not self.reference_table:
            raise ValueError(f"check '{self.name}' needs a reference_table")
        if self.kind == CheckKind.RANGE and self.min_value is None and self.max_value is None:
            raise ValueError(f"check '{self.name}' needs min_value and/or max_value")
        return self


class PipelineConfig(BaseModel):
    """Everything a run needs besides the sources themselves"""
    sources: List[SourceSchema] = Field(default_factory=list)
    code_maps: List[CodeMap] = Field(default_factory=list)
    survivorship: Dict[str, SurvivorshipRule] = Field(default_factory=dict)
    dimensions: List[DimensionConfig] = Field(default_factory=list)
    facts: List[FactConfig] = Field(default_factory=list)
    quality_checks: List[QualityCheckConfig] = Field(default_factory=list)

    @field_validator("sources")
    @classmethod
    def unique_sources(cls, v: List[SourceSchema]):
        seen = set()
        for schema in v:
            key = (schema.source_system, schema.entity_type)
            if key in seen:
                raise ValueError(f"duplicate schema for source {key[0]}/{key[1]}")
            seen.add(key)
        return v

    def schema_for(self, source_system: str, entity_type: str) -> Optional[SourceSchema]:
        for schema in self.sources:
            if schema.source_system == source_system and schema.entity_type == entity_type:
                return schema
        return None

    def code_map(self, name: str) -> Optional[CodeMap]:
        for code_map in self.code_maps:
            if code_map.name == name:
                return code_map
        return None

    def dimension(self, entity_type: str) -> Optional[DimensionConfig]:
        for dimension in self.dimensions:
            if dimension.entity_type == entity_type:
                return dimension
        return None

    def fact(self, entity_type: str) -> Optional[FactConfig]:
        for fact in self.facts:
            if fact.entity_type == entity_type:
                return fact
        return None

    def survivorship_for(self, entity_type: str) -> SurvivorshipRule:
        return self.survivorship.get(entity_type, SurvivorshipRule())

    @property
    def dimension_entity_types(self) -> List[str]:
        return [d.entity_type for d in self.dimensions]

    @property
    def fact_entity_types(self) -> List[str]:
        return [f.entity_type for f in self.facts]


def load_pipeline_config(source: Union[str, Path, Dict[str, Any]]) -> PipelineConfig:
    """
    Load and validate pipeline configuration.

    Args:
        source: Path to a YAML file, or an already-parsed mapping

    Raises:
        ConfigurationError: Missing file, invalid YAML or invalid configuration
    """
    if isinstance(source, dict):
        data = source
        origin = "<mapping>"
    else:
        path = Path(source)
        origin = str(path)
        if not path.exists():
            raise ConfigurationError(
                f"Pipeline configuration file not found: {path}",
                context={"config_path": origin}
            )
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                "Pipeline configuration is not valid YAML",
                context={"config_path": origin},
                original_exception=e
            )

    try:
        return PipelineConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(
            "Pipeline configuration failed validation",
            context={"config_path": origin, "errors": e.error_count()},
            original_exception=e
        )
