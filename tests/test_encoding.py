"""
Tests for the wire JSON encoding.
"""

from fargate_driver.encoding import dumps, loads


def test_compact_with_trailing_newline():
    assert dumps({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}\n'


def test_html_characters_are_escaped():
    content = dumps({"url": "http://x/?a=1&b=<c>"})
    assert content == '{"url":"http://x/?a=1\\u0026b=\\u003cc\\u003e"}\n'
    assert loads(content) == {"url": "http://x/?a=1&b=<c>"}


def test_line_separators_are_escaped():
    content = dumps({"s": "a\u2028b\u2029c"})
    assert "\\u2028" in content
    assert "\\u2029" in content
    assert loads(content) == {"s": "a\u2028b\u2029c"}


def test_non_ascii_kept():
    assert dumps({"name": "żółw"}) == '{"name":"żółw"}\n'


def test_loads_bytes():
    assert loads(b'{"TaskARN":"arn"}\n') == {"TaskARN": "arn"}
