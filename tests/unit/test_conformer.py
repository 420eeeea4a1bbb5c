"""
Unit tests for the cleaner/conformer
"""

from datetime import date, datetime

import pytest

from pipeline.conformer import Conformer, raw_business_key
from schemas.config import ColumnRule, ColumnType, load_pipeline_config
from schemas.records import RawRecord

EXTRACTED_AT = datetime(2024, 1, 20, 8, 0, 0)


def raw(source_system, entity_type, columns, row_number=1):
    return RawRecord(
        source_system=source_system,
        entity_type=entity_type,
        extracted_at=EXTRACTED_AT,
        columns=columns,
        row_number=row_number,
    )


@pytest.fixture
def conformer(pipeline_config):
    return Conformer(pipeline_config)


class TestConformer:
    """Test raw row conformance"""

    def test_trims_and_normalizes_case(self, conformer):
        """Test whitespace trimming, case rules and code mapping"""
        result = conformer.conform(raw("crm", "customer", {
            "customer_id": "  c42 ",
            "name": "  Jane Doe ",
            "city": "NYC\t",
            "country_code": " usa",
        }))

        assert result.accepted
        record = result.record
        assert record.business_key == "C42"
        assert record.attributes == {"name": "Jane Doe", "city": "NYC", "country": "US"}
        assert record.quality_flags == frozenset()
        assert record.extracted_at == EXTRACTED_AT

    def test_empty_string_is_null(self, conformer):
        """Test empty and whitespace-only cells become null"""
        result = conformer.conform(raw("crm", "customer", {
            "customer_id": "C1", "name": "   ", "city": "", "country_code": None,
        }))

        assert result.accepted
        assert result.record.attributes == {"name": None, "city": None, "country": None}

    def test_missing_business_key_quarantines(self, conformer):
        """Test a row without its business key is quarantined"""
        result = conformer.conform(raw("crm", "customer", {
            "customer_id": " ", "name": "Nobody", "city": "Oslo", "country_code": "US",
        }))

        assert not result.accepted
        assert result.quarantined.reason_code == "MISSING_BUSINESS_KEY"
        assert result.quarantined.raw.columns["name"] == "Nobody"

    def test_reserved_business_key_quarantines(self, conformer):
        """Test a source key equal to the unknown member's key is quarantined"""
        result = conformer.conform(raw("crm", "customer", {
            "customer_id": "unknown", "name": "Mystery Ltd", "city": "Oslo", "country_code": "US",
        }))

        assert not result.accepted
        assert result.quarantined.reason_code == "RESERVED_BUSINESS_KEY"

    def test_missing_mandatory_quarantines(self, conformer):
        """Test a mandatory column left empty is quarantined"""
        result = conformer.conform(raw("erp", "product", {
            "product_id": "P1", "product_name": "", "category": "hw", "unit_price": "1",
        }))

        assert result.quarantined.reason_code == "MISSING_MANDATORY"

    def test_unmapped_code_quarantines(self, conformer):
        """Test codes without a mapping are mandatory failures"""
        result = conformer.conform(raw("crm", "customer", {
            "customer_id": "C3", "name": "X", "city": "Rome", "country_code": "ZZ",
        }))

        assert result.quarantined.reason_code == "UNMAPPED_CODE"
        assert "ZZ" in result.quarantined.reason

    def test_source_scoped_code_map(self, conformer):
        """Test a code map entry scoped to one source system"""
        erp = conformer.conform(raw("erp", "product", {
            "product_id": "P1", "product_name": "Widget", "category": "HW", "unit_price": "1",
        }))
        assert erp.record.attributes["category"] == "Hardware"

    def test_invalid_optional_value_is_flagged(self, conformer):
        """Test a bad optional value becomes null with a quality flag"""
        result = conformer.conform(raw("erp", "product", {
            "product_id": "P2", "product_name": "Gadget", "category": "software", "unit_price": "abc",
        }))

        assert result.accepted
        assert result.record.attributes["unit_price"] is None
        assert result.record.quality_flags == frozenset({"unit_price:invalid_decimal"})

    def test_invalid_mandatory_value_quarantines(self, conformer):
        """Test a bad mandatory date is quarantined as INVALID_TYPE"""
        result = conformer.conform(raw("erp", "sales", {
            "order_date": "2024-13-01", "customer_id": "C1", "product_id": "P1",
            "rep_id": "R1", "quantity": "1", "amount": "9.99",
        }))

        assert result.quarantined.reason_code == "INVALID_TYPE"

    def test_fact_rows_keyed_by_content(self, conformer):
        """Test rows of a source without a business key get a content key"""
        row = raw("erp", "sales", {
            "order_date": "2024-01-05", "customer_id": "101", "product_id": "55",
            "rep_id": "", "quantity": "2", "amount": "100.0",
        })
        result = conformer.conform(row)

        assert result.record.business_key == row.content_hash()
        assert result.record.attributes["date"] == date(2024, 1, 5)
        assert result.record.attributes["amount"] == 100.0
        assert result.record.attributes["salesrep"] is None

    def test_unknown_source_quarantines(self, conformer):
        """Test rows from an undeclared source are quarantined"""
        result = conformer.conform(raw("legacy", "customer", {"id": "1"}))

        assert result.quarantined.reason_code == "NO_SCHEMA"

    def test_exactly_one_outcome_per_row(self, conformer):
        """Test conform_many returns one outcome for every input row"""
        rows = [
            raw("crm", "customer", {"customer_id": "C1", "name": "A", "city": "", "country_code": "US"}, 1),
            raw("crm", "customer", {"customer_id": "", "name": "B", "city": "", "country_code": "US"}, 2),
            raw("crm", "customer", {"customer_id": "C3", "name": "C", "city": "", "country_code": "??"}, 3),
        ]
        results = conformer.conform_many(rows)

        assert len(results) == 3
        assert [r.accepted for r in results] == [True, False, False]
        assert all((r.record is None) != (r.quarantined is None) for r in results)


class TestCoercion:
    """Test type coercion rules"""

    @pytest.mark.parametrize("value,column_type,expected", [
        ("42", ColumnType.INTEGER, 42),
        ("42.0", ColumnType.INTEGER, 42),
        ("3.5", ColumnType.FLOAT, 3.5),
        ("19.98", ColumnType.DECIMAL, 19.98),
        ("yes", ColumnType.BOOLEAN, True),
        ("0", ColumnType.BOOLEAN, False),
        ("2024-01-05", ColumnType.DATE, date(2024, 1, 5)),
        ("2024-01-05T10:00:00Z", ColumnType.DATETIME, datetime(2024, 1, 5, 10, 0, 0)),
        ("2024-01-05T12:00:00+02:00", ColumnType.DATETIME, datetime(2024, 1, 5, 10, 0, 0)),
    ])
    def test_coerce(self, value, column_type, expected):
        """Test coercion to each declared type"""
        rule = ColumnRule(source_column="x", type=column_type)
        assert Conformer.coerce(value, rule) == expected

    @pytest.mark.parametrize("value,column_type", [
        ("4.5", ColumnType.INTEGER),
        ("nan", ColumnType.FLOAT),
        ("maybe", ColumnType.BOOLEAN),
        ("05/01/2024", ColumnType.DATE),
    ])
    def test_coerce_rejects(self, value, column_type):
        """Test values that do not fit the declared type"""
        rule = ColumnRule(source_column="x", type=column_type)
        with pytest.raises(ValueError):
            Conformer.coerce(value, rule)

    def test_custom_date_format(self):
        """Test an explicit date format"""
        rule = ColumnRule(source_column="x", type=ColumnType.DATE, date_format="%d/%m/%Y")
        assert Conformer.coerce("05/01/2024", rule) == date(2024, 1, 5)


class TestCompositeKeys:
    """Test composite business keys"""

    @pytest.fixture
    def composite_config(self):
        return load_pipeline_config({
            "sources": [{
                "source_system": "erp",
                "entity_type": "product",
                "columns": [
                    {"source_column": "plant", "type": "string", "case": "upper", "business_key": True},
                    {"source_column": "sku", "type": "integer", "business_key": True},
                    {"source_column": "name"},
                ],
            }],
        })

    def test_key_parts_joined(self, composite_config):
        """Test key parts are conformed and joined with a separator"""
        row = raw("erp", "product", {"plant": " de01", "sku": "0042", "name": "Bolt"})
        result = Conformer(composite_config).conform(row)

        assert result.record.business_key == "DE01|42"
        assert "plant" not in result.record.attributes

    def test_raw_business_key_matches_conformed(self, composite_config):
        """Test the Bronze key helper agrees with conformance"""
        row = raw("erp", "product", {"plant": "de01", "sku": "42", "name": "Bolt"})
        schema = composite_config.schema_for("erp", "product")

        assert raw_business_key(row, schema) == "DE01|42"

    def test_raw_business_key_never_raises(self, composite_config):
        """Test an unusable key yields None instead of an error"""
        row = raw("erp", "product", {"plant": "de01", "sku": "x", "name": "Bolt"})
        schema = composite_config.schema_for("erp", "product")

        assert raw_business_key(row, schema) is None
