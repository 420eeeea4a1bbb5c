"""
Clean and conform raw rows into typed records (Bronze -> Silver).

Handles:
- Whitespace trimming and case normalization
- Table-driven code mapping (unmapped codes are mandatory failures)
- Type coercion against the declared source schema
- Quarantine of rows failing a business-key or mandatory column
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Set
import math
import logging

from core.exceptions import ParseError
from pipeline.catalog import UNKNOWN_BUSINESS_KEY
from schemas.config import CaseRule, ColumnRule, ColumnType, PipelineConfig, SourceSchema
from schemas.records import CleanRecord, ConformResult, QuarantinedRecord, RawRecord, to_naive_utc

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "|"

_TRUE = {"true", "t", "yes", "y", "1"}
_FALSE = {"false", "f", "no", "n", "0"}


class Conformer:
    """
    Conform raw records against declared source schemas.

    Emits exactly one outcome per input row: a CleanRecord, or a
    QuarantinedRecord carrying a reason code.
    """

    def __init__(self, config: PipelineConfig):
        self.config = config

    def conform(self, raw: RawRecord, schema: Optional[SourceSchema] = None) -> ConformResult:
        """
        Conform one raw row.

        Args:
            raw: Raw row from Bronze
            schema: Declared schema; looked up from config when omitted

        Returns:
            ConformResult with either ``record`` or ``quarantined`` set
        """
        schema = schema or self.config.schema_for(raw.source_system, raw.entity_type)
        if schema is None:
            return self._quarantine(
                raw,
                ParseError(
                    f"No schema declared for {raw.source_system}/{raw.entity_type}",
                    reason_code="NO_SCHEMA"
                )
            )

        try:
            return ConformResult(record=self._conform(raw, schema))
        except ParseError as e:
            return self._quarantine(raw, e)

    def conform_many(self, raws: List[RawRecord]) -> List[ConformResult]:
        return [self.conform(raw) for raw in raws]

    def _conform(self, raw: RawRecord, schema: SourceSchema) -> CleanRecord:
        attributes: Dict[str, Any] = {}
        flags: Set[str] = set()
        key_parts: List[str] = []

        for rule in schema.columns:
            value = self._conform_column(raw, rule, flags)
            if rule.business_key:
                key_parts.append(key_part(value))
            else:
                attributes[rule.attribute] = value

        # Sources without a declared key (e.g. fact extracts) are keyed by content
        business_key = KEY_SEPARATOR.join(key_parts) if key_parts else raw.content_hash()
        if business_key == UNKNOWN_BUSINESS_KEY:
            raise ParseError(
                f"Business key '{business_key}' is reserved for the unknown member",
                reason_code="RESERVED_BUSINESS_KEY",
                context={"source_system": raw.source_system, "entity_type": raw.entity_type, "row_number": raw.row_number}
            )

        return CleanRecord(
            entity_type=raw.entity_type,
            business_key=business_key,
            source_system=raw.source_system,
            extracted_at=raw.extracted_at,
            attributes=attributes,
            quality_flags=frozenset(flags),
            row_number=raw.row_number,
            bronze_id=raw.bronze_id,
        )

    def _conform_column(self, raw: RawRecord, rule: ColumnRule, flags: Set[str]) -> Any:
        context = {
            "source_system": raw.source_system,
            "entity_type": raw.entity_type,
            "row_number": raw.row_number,
            "column": rule.source_column,
        }

        value = self._clean_text(raw.columns.get(rule.source_column))

        if value is None:
            if rule.business_key:
                raise ParseError(
                    f"Business key column '{rule.source_column}' is empty",
                    reason_code="MISSING_BUSINESS_KEY",
                    context=context
                )
            if rule.mandatory:
                raise ParseError(
                    f"Mandatory column '{rule.source_column}' is empty",
                    reason_code="MISSING_MANDATORY",
                    context=context
                )
            return None

        value = self._apply_case(value, rule.case)

        if rule.code_map:
            code_map = self.config.code_map(rule.code_map)
            mapped = code_map.translate(raw.source_system, value) if code_map else None
            if mapped is None:
                raise ParseError(
                    f"Code '{value}' has no mapping in '{rule.code_map}'",
                    reason_code="UNMAPPED_CODE",
                    context={**context, "code": value, "code_map": rule.code_map}
                )
            value = mapped

        try:
            return self.coerce(value, rule)
        except (ValueError, TypeError, OverflowError, InvalidOperation) as e:
            if rule.required:
                raise ParseError(
                    f"Column '{rule.source_column}' is not a valid {rule.type.value}: {value!r}",
                    reason_code="INVALID_TYPE",
                    context={**context, "value": value, "type": rule.type.value},
                    original_exception=e
                )
            flags.add(f"{rule.attribute}:invalid_{rule.type.value}")
            logger.debug(
                f"Nulled {raw.source_system}/{raw.entity_type} row {raw.row_number} "
                f"column {rule.source_column}: {value!r} is not a {rule.type.value}"
            )
            return None

    @staticmethod
    def coerce(value: str, rule: ColumnRule) -> Any:
        """Coerce a cleaned string to the column's declared type."""
        column_type = rule.type

        if column_type in (ColumnType.STRING, ColumnType.CODE):
            return value

        if column_type == ColumnType.INTEGER:
            number = Decimal(value)
            if number != number.to_integral_value():
                raise ValueError(f"{value!r} is not integral")
            return int(number)

        if column_type in (ColumnType.FLOAT, ColumnType.DECIMAL):
            number = float(value)
            if not math.isfinite(number):
                raise ValueError(f"{value!r} is not a finite number")
            return number

        if column_type == ColumnType.DATE:
            if rule.date_format:
                return datetime.strptime(value, rule.date_format).date()
            try:
                return date.fromisoformat(value)
            except ValueError:
                return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00"))).date()

        if column_type == ColumnType.DATETIME:
            if rule.date_format:
                return datetime.strptime(value, rule.date_format)
            return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))

        if column_type == ColumnType.BOOLEAN:
            lowered = value.lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(f"{value!r} is not a boolean")

        raise TypeError(f"Unsupported column type: {column_type}")

    @staticmethod
    def _clean_text(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @staticmethod
    def _apply_case(value: str, case: CaseRule) -> str:
        if case == CaseRule.UPPER:
            return value.upper()
        if case == CaseRule.LOWER:
            return value.lower()
        if case == CaseRule.TITLE:
            return value.title()
        return value

    @staticmethod
    def _quarantine(raw: RawRecord, error: ParseError) -> ConformResult:
        logger.info(
            f"Quarantined {raw.source_system}/{raw.entity_type} row {raw.row_number}: "
            f"{error.reason_code} {error.message}"
        )
        return ConformResult(
            quarantined=QuarantinedRecord(
                raw=raw,
                reason_code=error.reason_code,
                reason=error.message,
            )
        )


def key_part(value: Any) -> str:
    """String form of one business key part; shared with fact key resolution."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def raw_business_key(raw: RawRecord, schema: Optional[SourceSchema]) -> Optional[str]:
    """
    Best-effort business key straight from the raw row, stored on Bronze so
    incremental runs can find every row of a touched key.

    Applies the same trim/case/type rules as conformance but never raises.
    """
    if schema is None or not schema.business_key_columns:
        return None
    parts = []
    for rule in schema.business_key_columns:
        value = Conformer._clean_text(raw.columns.get(rule.source_column))
        if value is None:
            return None
        value = Conformer._apply_case(value, rule.case)
        try:
            parts.append(key_part(Conformer.coerce(value, rule)))
        except (ValueError, TypeError, OverflowError, InvalidOperation):
            return None
    return KEY_SEPARATOR.join(parts)
