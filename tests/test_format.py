"""Tests for per-cell value formatting."""

from datetime import datetime, timezone
from decimal import Decimal

import pyarrow as pa
import pytest

from query_databricks import format_value, formatter_for, unsupported_columns


class TestNulls:
    @pytest.mark.parametrize(
        "data_type",
        [pa.int32(), pa.int64(), pa.float64(), pa.string(), pa.timestamp("us"), pa.bool_()],
    )
    def test_null_is_literal_null_for_every_type(self, data_type):
        """A null cell renders as NULL regardless of the column type."""
        column = pa.array([None], type=data_type)
        assert format_value(column, 0) == "NULL"

    def test_null_between_values(self):
        column = pa.array([7, None, 9], type=pa.int32())
        assert [format_value(column, i) for i in range(3)] == ["7", "NULL", "9"]


class TestIntegers:
    def test_int32_plain_decimal(self):
        column = pa.array([0, -42, 2147483647], type=pa.int32())
        assert [format_value(column, i) for i in range(3)] == ["0", "-42", "2147483647"]

    def test_int64_has_no_thousands_separator(self):
        column = pa.array([1234567890123], type=pa.int64())
        assert format_value(column, 0) == "1234567890123"


class TestFloats:
    def test_two_decimal_places(self):
        column = pa.array([12.5, 3.14159, 0.0, -1234.5], type=pa.float64())
        assert format_value(column, 0) == "12.50"
        assert format_value(column, 1) == "3.14"
        assert format_value(column, 2) == "0.00"
        assert format_value(column, 3) == "-1234.50"

    def test_float32_is_not_a_modeled_type(self):
        column = pa.array([1.5], type=pa.float32())
        assert format_value(column, 0) == "Unsupported type: float"


class TestText:
    def test_raw_value_unescaped(self):
        column = pa.array(['tab\there "quoted"', "", "日本語"], type=pa.string())
        assert format_value(column, 0) == 'tab\there "quoted"'
        assert format_value(column, 1) == ""
        assert format_value(column, 2) == "日本語"


class TestTimestamps:
    def test_rfc3339_utc(self):
        column = pa.array([datetime(2015, 1, 2, 3, 4, 5)], type=pa.timestamp("us"))
        assert format_value(column, 0) == "2015-01-02T03:04:05Z"

    def test_fractional_seconds_dropped(self):
        column = pa.array([datetime(2015, 1, 2, 3, 4, 5, 999999)], type=pa.timestamp("us"))
        assert format_value(column, 0) == "2015-01-02T03:04:05Z"

    def test_timezone_aware_column_rendered_in_utc(self):
        value = datetime(2023, 6, 30, 23, 59, 59, tzinfo=timezone.utc)
        column = pa.array([value], type=pa.timestamp("us", tz="UTC"))
        assert format_value(column, 0) == "2023-06-30T23:59:59Z"

    @pytest.mark.parametrize("unit", ["s", "ms", "us", "ns"])
    def test_every_unit_normalized(self, unit):
        column = pa.array([datetime(2020, 2, 29, 12, 0, 1)], type=pa.timestamp(unit))
        assert format_value(column, 0) == "2020-02-29T12:00:01Z"

    def test_before_epoch(self):
        column = pa.array([-500_000], type=pa.timestamp("us"))
        assert format_value(column, 0) == "1969-12-31T23:59:59Z"

    def test_out_of_range_year_gets_placeholder(self):
        # roughly the year 11476
        column = pa.array([300_000_000_000_000_000, 0], type=pa.timestamp("us"))

        assert format_value(column, 0) == "Timestamp out of range: 300000000000000000us"
        assert format_value(column, 1) == "1970-01-01T00:00:00Z"


class TestUnsupported:
    def test_placeholder_names_the_type(self):
        column = pa.array([True, False], type=pa.bool_())
        assert format_value(column, 0) == "Unsupported type: bool"

    def test_decimal_placeholder(self):
        column = pa.array([Decimal("1.00")], type=pa.decimal128(10, 2))
        assert format_value(column, 0) == "Unsupported type: decimal128(10, 2)"

    def test_formatter_lookup(self):
        assert formatter_for(pa.int64()) is not None
        assert formatter_for(pa.large_string()) is None
        assert formatter_for(pa.date32()) is None

    def test_unsupported_columns_lists_only_degraded_fields(self):
        schema = pa.schema(
            [("id", pa.int64()), ("flag", pa.bool_()), ("day", pa.date32()), ("name", pa.string())]
        )
        assert unsupported_columns(schema) == ["flag", "day"]


class TestContract:
    @pytest.mark.parametrize("index", [-1, 3, 100])
    def test_index_out_of_range(self, index):
        column = pa.array([1, 2, 3], type=pa.int64())
        with pytest.raises(IndexError):
            format_value(column, index)

    def test_deterministic(self):
        """Same column and index always give the same text."""
        column = pa.array([datetime(2015, 1, 2, 3, 4, 5)], type=pa.timestamp("us"))
        assert format_value(column, 0) == format_value(column, 0)
