"""Extract the generated file mapping from free-form model output.

The model is asked for a bare JSON object of ``path -> content`` but in
practice wraps it in prose or Markdown fences, escapes it twice, or nests it
under a ``files`` key. Decoding only ever parses data: output is never
evaluated.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from typing import Any

from appgen.core.errors import GenerationFailed

REQUIRED_FILES = ("src/app/page.tsx", "src/app/layout.tsx")

_FENCE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\r?\n(.*?)```", re.DOTALL)
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
_MAX_NESTED_DECODES = 2


def decode_generated_files(text: str | None) -> dict[str, str]:
    """Return the validated file mapping or raise GenerationFailed."""
    if not text or not text.strip():
        msg = "Generator returned empty output"
        raise GenerationFailed(msg)

    parse_error: str | None = None
    validation_error: GenerationFailed | None = None
    for candidate in _candidates(text):
        try:
            payload = _parse(candidate)
        except ValueError as exc:
            parse_error = str(exc)
            continue
        files = _unwrap(payload)
        if files is None:
            parse_error = f"expected a JSON object, got {type(payload).__name__}"
            continue
        try:
            return _validate(files)
        except GenerationFailed as exc:
            validation_error = validation_error or exc

    if validation_error is not None:
        raise validation_error
    msg = f"Could not extract a JSON file mapping from generator output: {parse_error}"
    raise GenerationFailed(msg)


def _candidates(text: str) -> Iterator[str]:
    seen: set[str] = set()
    stripped = text.strip()
    options = [match.group(1).strip() for match in _FENCE.finditer(stripped)]
    options.append(stripped)
    start, end = stripped.find("{"), stripped.rfind("}")
    if start != -1 and end > start:
        options.append(stripped[start : end + 1])
    for option in options:
        if option and option not in seen:
            seen.add(option)
            yield option


def _repair(candidate: str) -> str:
    """Undo one level of backslash escaping."""
    return candidate.replace("\\\\", "\\").replace('\\"', '"')


def _loads(candidate: str) -> Any:
    # strict=False admits literal newlines and tabs inside strings.
    return json.loads(candidate, strict=False)


def _parse(candidate: str) -> Any:
    try:
        value = _loads(candidate)
    except json.JSONDecodeError as exc:
        repaired = _repair(candidate)
        if repaired == candidate:
            msg = f"invalid JSON ({exc.msg} at line {exc.lineno})"
            raise ValueError(msg) from exc
        try:
            value = _loads(repaired)
        except json.JSONDecodeError as repair_exc:
            msg = f"invalid JSON ({repair_exc.msg} at line {repair_exc.lineno})"
            raise ValueError(msg) from repair_exc

    for _ in range(_MAX_NESTED_DECODES):
        if not isinstance(value, str):
            break
        try:
            value = _loads(value.strip())
        except json.JSONDecodeError as exc:
            msg = f"invalid JSON inside string payload ({exc.msg})"
            raise ValueError(msg) from exc
    return value


def _unwrap(payload: Any) -> dict[Any, Any] | None:
    if not isinstance(payload, dict):
        return None
    if set(payload) == {"files"} and isinstance(payload["files"], dict):
        return payload["files"]
    return payload


def _normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    if (
        not normalized
        or normalized.startswith("/")
        or _DRIVE_PREFIX.match(normalized)
        or ".." in normalized.split("/")
    ):
        msg = f"Unsafe file path in generator output: {path!r}"
        raise GenerationFailed(msg)
    return normalized


def _validate(files: dict[Any, Any]) -> dict[str, str]:
    if not files:
        msg = "Generator returned an empty file mapping"
        raise GenerationFailed(msg)

    result: dict[str, str] = {}
    for path, content in files.items():
        if not isinstance(content, str):
            msg = f"File contents must be strings: {path}"
            raise GenerationFailed(msg)
        result[_normalize_path(str(path))] = content

    missing = [name for name in REQUIRED_FILES if not result.get(name, "").strip()]
    if missing:
        msg = f"Missing required files in generator output: {', '.join(missing)}"
        raise GenerationFailed(msg)
    return result
