"""
JSON encoding shared by the task metadata files and the config stage output.

The output is compact, newline-terminated and HTML-escaped so that metadata
written by one driver build can be read by another.
"""

import json
from typing import Any, Union

_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def dumps(data: Any) -> str:
    """Encode ``data`` as a single compact JSON line."""
    encoded = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in _HTML_ESCAPES.items():
        encoded = encoded.replace(char, escaped)
    return encoded + "\n"


def loads(content: Union[str, bytes]) -> Any:
    """Decode JSON from text or UTF-8 bytes."""
    if isinstance(content, bytes):
        content = content.decode("utf-8")
    return json.loads(content)
