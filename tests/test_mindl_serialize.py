from datetime import datetime

import pytest
from mindl.mindl_directives import DirectiveResult
from mindl.mindl_serialize import detect_format, dump_records, load_records
from mindl.mindl_values import ListValue, NumberValue, StringValue

RESULTS = {
    "0:5": DirectiveResult.success(NumberValue(3.0), executed_at=datetime(2026, 1, 15, 9, 30)),
    "1:0": DirectiveResult.success(ListValue((StringValue("a"), StringValue("b"))), is_dynamic=True),
    "2:4": DirectiveResult.failure("Parse error: Expected expression"),
}


def test_json_roundtrip():
    s = dump_records(RESULTS, fmt="json")
    out = load_records(s)  # JSON is sniffed from leading "{"
    assert out == RESULTS


def test_yaml_roundtrip():
    s = dump_records(RESULTS, fmt="yaml")
    out = load_records(s, fmt="yaml")
    assert out == RESULTS
    assert out["2:4"].to_display_string() == "Error: Parse error: Expected expression"


def test_compact_json_and_bytes_input():
    s = dump_records(RESULTS, fmt="json", pretty=False)
    assert "\n" not in s
    assert load_records(s.encode("utf-8")) == RESULTS


def test_loaded_values_display():
    out = load_records(dump_records(RESULTS, fmt="yaml"))
    assert out["1:0"].to_display_string() == "[a, b]"
    assert out["0:5"].executed_at == datetime(2026, 1, 15, 9, 30)


def test_empty_document_loads_as_empty_cache():
    assert load_records("") == {}


def test_non_mapping_is_rejected():
    with pytest.raises(ValueError):
        load_records("[1, 2]")


def test_unsupported_format():
    with pytest.raises(ValueError):
        dump_records(RESULTS, fmt="toml")


@pytest.mark.parametrize(
    "hint,filename,expected",
    [
        (None, "cache.json", "json"),
        (None, "cache.YML", "yaml"),
        ('{"0:0": {}}', None, "json"),
        ("  [1]", None, "json"),
        ("a: 1", None, "yaml"),
        ('{"a": 1}', "cache.yaml", "yaml"),  # filename wins
        (None, None, "yaml"),
    ],
)
def test_detect_format(hint, filename, expected):
    assert detect_format(hint, filename) == expected
