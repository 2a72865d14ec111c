"""Condition evaluation for API poll triggers.

Path grammar understood by get_json_path_value:

    path   := ["$"] ["."] segment ( "." key | "[" int "]" )*
    segment:= key | "[" int "]"

Keys are any run of characters other than ".", "[" and "]". Bracketed
integers index into lists. An empty path or "$" returns the whole document.
No wildcards, slices, recursive descent or filter expressions are supported;
a path that needs them resolves to None rather than matching partially.
"""

import re
from typing import Any, List, Optional, Union

_TOKEN_RE = re.compile(r"\[(\d+)\]|[^.\[\]]+")


def parse_json_path(path: str) -> List[Union[str, int]]:
    """Split a path into key (str) and index (int) tokens."""
    text = (path or "").strip()
    if text.startswith("$."):
        text = text[2:]
    elif text.startswith("$"):
        text = text[1:]
    tokens: List[Union[str, int]] = []
    for match in _TOKEN_RE.finditer(text):
        if match.group(1) is not None:
            tokens.append(int(match.group(1)))
        else:
            tokens.append(match.group(0))
    return tokens


def get_json_path_value(data: Any, path: str) -> Any:
    """Return the value at path inside data, or None when it does not resolve."""
    if not path or path.strip() == "$":
        return data
    current = data
    for token in parse_json_path(path):
        if current is None:
            return None
        if isinstance(token, int):
            if not isinstance(current, list) or token >= len(current):
                return None
            current = current[token]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(token)
    return current


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def check_condition(op: str, value: Any, expected: Optional[str] = None) -> bool:
    """Evaluate truthy / equals / contains against an extracted value."""
    if op == "truthy":
        return bool(value)
    text = _as_text(value)
    expected = _as_text(expected)
    if op == "equals":
        return text == expected
    if op == "contains":
        return bool(expected) and expected in text
    return False
