"""Lenient parsing of model output into pydantic schemas.

Models wrap JSON in markdown, leave trailing commas, emit python literals or
stop mid-object. Each repair step is tried in turn before giving up.
"""

from __future__ import annotations

import ast
import json
import re
from typing import Any, Iterator, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from ..errors import ProviderError
from ..observability import ErrorCode

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", flags=re.DOTALL | re.IGNORECASE)


def _scan(text: str) -> Iterator[Tuple[int, str, bool]]:
    """Yield (index, char, inside_double_quoted_string) honouring escapes."""
    in_string = False
    escape = False
    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                yield i, ch, False
                in_string = False
                continue
            yield i, ch, True
            continue
        if ch == '"':
            in_string = True
            yield i, ch, True
            continue
        yield i, ch, False


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if "```" not in stripped:
        return stripped
    m = _FENCE_RE.search(stripped)
    if m is not None:
        return m.group(1).strip()
    return stripped.replace("```", "").strip()


def extract_first_json_object(text: str) -> Optional[str]:
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    for i, ch, in_string in _scan(text):
        if i < start or in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def escape_raw_newlines(text: str) -> str:
    out: List[str] = []
    for _, ch, in_string in _scan(text):
        if in_string and ch in ("\n", "\r"):
            out.append("\\n")
        else:
            out.append(ch)
    return "".join(out)


def _single_to_double_quotes(text: str) -> str:
    out: List[str] = []
    in_dq = in_sq = escape = False
    for ch in text:
        if in_dq:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_dq = False
        elif in_sq:
            if escape:
                out.append(ch if ch in ("'", "\\") else "\\" + ch)
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == "'":
                out.append('"')
                in_sq = False
            elif ch == '"':
                out.append('\\"')
            elif ch in ("\n", "\r"):
                out.append("\\n")
            else:
                out.append(ch)
        elif ch == '"':
            out.append(ch)
            in_dq = True
        elif ch == "'":
            out.append('"')
            in_sq = True
        else:
            out.append(ch)
    return "".join(out)


def repair_jsonish(text: str) -> str:
    text = re.sub(r",\s*([\]\}])", r"\1", text)
    text = re.sub(r"\bNone\b", "null", text)
    text = re.sub(r"\bTrue\b", "true", text)
    text = re.sub(r"\bFalse\b", "false", text)
    text = re.sub(r'([\{\[,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*):', r'\1"\2"\3:', text)
    text = _single_to_double_quotes(text)
    return re.sub(r",\s*([\]\}])", r"\1", text)


def close_open_brackets(text: str) -> str:
    stack: List[str] = []
    for _, ch, in_string in _scan(text):
        if in_string:
            continue
        if ch in "{[":
            stack.append(ch)
        elif ch in "}]" and stack:
            if (stack[-1], ch) in (("{", "}"), ("[", "]")):
                stack.pop()
    closers = "".join("}" if c == "{" else "]" for c in reversed(stack))
    return text + closers


def _candidates(text: str) -> Iterator[Any]:
    stripped = strip_code_fences(text)
    yield lambda: json.loads(stripped)

    candidate = extract_first_json_object(stripped) or stripped
    yield lambda: json.loads(candidate)

    escaped = escape_raw_newlines(candidate)
    yield lambda: json.loads(escaped)

    repaired = close_open_brackets(repair_jsonish(escaped))
    yield lambda: json.loads(repaired)
    yield lambda: ast.literal_eval(candidate)
    yield lambda: ast.literal_eval(repaired)


def parse_model_json(text: str, schema: Type[T]) -> T:
    """Parse noisy model output into `schema`.

    Raises ProviderError when no repair yields a valid document.
    """
    last_error: Optional[Exception] = None
    for attempt in _candidates(text):
        try:
            data = attempt()
        except Exception as e:
            last_error = e
            continue
        if not isinstance(data, dict):
            last_error = ValueError(f"Expected a JSON object, got {type(data).__name__}")
            continue
        try:
            return schema.model_validate(data)
        except Exception as e:
            last_error = e
    raise ProviderError(
        f"Model response is not parseable JSON: {last_error}",
        code=ErrorCode.VISION_MALFORMED,
    )
