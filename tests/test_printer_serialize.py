import math

import pytest

from buddyscript.buddy_printer import format_number, stringify, to_json
from buddyscript.buddy_serialize import deserialize, detect_format, serialize


def test_format_number():
    assert format_number(3) == "3"
    assert format_number(2.0) == "2"
    assert format_number(0.1) == "0.1"
    assert format_number(math.nan) == "NaN"
    assert format_number(-math.inf) == "-Infinity"
    assert format_number(1e21) == "1e+21"


def test_stringify():
    assert stringify(None) == "null"
    assert stringify(True) == "true"
    assert stringify([1, "a", [None]]) == "[1, a, [null]]"
    assert stringify({"a": [1, 2], "f": print}) == '{"a":[1,2]}'
    assert stringify(len) == "[Function]"


def test_to_json():
    assert to_json(5) == "5"
    assert to_json("x") == '"x"'
    assert to_json([1.0, math.inf]) == "[1,null]"


def test_serialize_json_and_yaml():
    value = {"name": "x", "items": [1, 2], "fn": print}
    assert serialize(value, fmt="json", indent=None) == '{"name":"x","items":[1,2]}'
    assert serialize(value, fmt="yaml") == "name: x\nitems:\n- 1\n- 2\n"
    with pytest.raises(ValueError):
        serialize(value, fmt="toml")


def test_detect_format():
    assert detect_format("a.JSON") == "json"
    assert detect_format("a.yml") == "yaml"
    assert detect_format("a.txt", "  [1]") == "json"
    assert detect_format("a.txt", "plain") is None


def test_deserialize():
    assert deserialize('{"a": 1}', fmt="json") == {"a": 1}
    assert deserialize(b"a: [1, 2]", path="c.yaml") == {"a": [1, 2]}
    assert deserialize("just text", path="c.txt") == "just text"
    with pytest.raises(ValueError, match="Invalid JSON"):
        deserialize("{bad", fmt="json")
