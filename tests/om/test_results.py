"""Tests for result formatting (csv, csv-flat, arrays)."""

import datetime

from obspine.om.fields import Field, FieldType
from obspine.om.model import Phenomenon, Procedure
from obspine.om.queries import TextEncoding
from obspine.om.results import (
    FLAT_HEADER,
    columns,
    format_value,
    result_fields,
    to_array,
    to_csv,
    to_csv_flat,
)

T0 = datetime.datetime(2024, 3, 1)


class TestFormatValue:
    def test_scalars(self):
        assert format_value(None) == ""
        assert format_value(True) == "true"
        assert format_value(10.0) == "10"
        assert format_value(10.25) == "10.25"
        assert format_value(T0) == "2024-03-01T00:00:00"
        assert format_value("ok") == "ok"

    def test_decimal_separator(self):
        assert format_value(1.5, TextEncoding(decimal_separator=",")) == "1,5"


class TestColumns:
    def test_sub_field_columns_follow_their_field(self):
        fields = [
            Field("time", FieldType.TIME),
            Field("temperature", quality_fields=[Field("flag", FieldType.TEXT)]),
            Field("salinity"),
        ]
        assert columns(fields) == ["time", "temperature", "temperature_quality_flag", "salinity"]
        assert columns(fields, include_id=True, include_time=True)[:3] == ["id", "time", "time"]

    def test_result_fields(self):
        fields = [Field("depth"), Field("temperature")]
        out = result_fields(fields, include_id=True)
        assert [f.name for f in out] == ["id", "depth", "temperature"]
        assert out[0].type is FieldType.TEXT


class TestCsv:
    def test_to_csv(self):
        rows = [{"time": T0, "temperature": 1.5}, {"time": T0, "temperature": None}]
        assert to_csv(["time", "temperature"], rows) == (
            "time,temperature\n2024-03-01T00:00:00,1.5\n2024-03-01T00:00:00,\n"
        )

    def test_to_array(self):
        assert to_array(["a", "b"], [{"b": 2, "a": 1}, {"a": 3}]) == [[1, 2], [3, None]]

    def test_flat_time_series(self):
        proc = Procedure("sensor-1", name="Sensor", description="Moored")
        fields = [
            Field("time", FieldType.TIME),
            Field("temperature", uom="degC", quality_fields=[Field("flag", FieldType.TEXT)]),
            Field("salinity"),
        ]
        rows = [{"time": T0, "temperature": 12.5, "temperature_quality_flag": "good", "salinity": None}]
        phenomena = {"temperature": Phenomenon.simple("urn:phen:temperature", name="Temperature")}
        lines = to_csv_flat(proc, fields, rows, phenomena, profile=False).splitlines()
        assert lines[0] == ",".join(FLAT_HEADER)
        assert lines[1:] == [
            "2024-03-01T00:00:00,sensor-1,Sensor,Moored,urn:phen:temperature,Temperature,,degC,,12.5,flag:good,"
        ]

    def test_flat_profile_uses_z_value(self):
        proc = Procedure("sensor-2")
        fields = [Field("depth", uom="m"), Field("temperature")]
        rows = [{"time": T0, "depth": 5.0, "temperature": 8.0}]
        lines = to_csv_flat(proc, fields, rows, {}, profile=True).splitlines()
        assert lines[1] == "2024-03-01T00:00:00,sensor-2,,,temperature,temperature,,,5,8,,"
