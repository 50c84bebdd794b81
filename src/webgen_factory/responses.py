"""Strict-then-lenient decoding of provider output into the response union.

Decoding order:
1. The whole reply parses as a JSON object.
2. The first fenced ```json block, then the first balanced ``{...}`` object found
   anywhere in the prose; each candidate is retried once after trailing-comma repair.
3. ``FILE: <path>`` headers followed by fenced code blocks.
4. Any remaining non-empty text becomes a ``TextResponse``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator

from pydantic import TypeAdapter, ValidationError

from .errors import MalformedResponseError
from .models import (
    ActionsResponse,
    FilesResponse,
    GeneratedFile,
    GenerationResponse,
    TextResponse,
    WriteAction,
    normalize_file_path,
)

logger = logging.getLogger(__name__)

_RESPONSE_ADAPTER: TypeAdapter[Any] = TypeAdapter(GenerationResponse)

_JSON_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n(\{.*?\})\s*\n?```", re.DOTALL)
_CODE_FENCE_RE = re.compile(r"```[\w.+-]*[ \t]*\r?\n(.*?)```", re.DOTALL)
_FILE_BLOCK_RE = re.compile(
    r"FILE:\s*([^\n\r]+)[\r\n]+\s*```(?:tsx?|typescript|jsx?|javascript|js|json|css|html|md)?[\r\n]+(.*?)```",
    re.DOTALL | re.IGNORECASE,
)
_FENCE_PATH_RE = re.compile(
    r"```(?:tsx?|typescript|ts|jsx?|js|json|css):\s*([^\n\r]+)[\r\n]+(.*?)```",
    re.DOTALL | re.IGNORECASE,
)
_LOOSE_FILE_BLOCK_RE = re.compile(r"FILE:\s*([^\n\r]+)[\r\n]+\s*```[^\n\r]*[\r\n]*(.*?)```", re.DOTALL | re.IGNORECASE)

_ACTION_TYPE_ALIASES = {
    "write": "write",
    "write_file": "write",
    "replace_region": "replace_region",
    "replace-region": "replace_region",
    "line_replace": "replace_region",
    "replace": "replace_region",
    "delete": "delete",
    "delete_file": "delete",
    "rename": "rename",
    "rename_file": "rename",
}
_ACTION_FIELD_ALIASES = {
    "file_path": "path",
    "original_file_path": "path",
    "new_file_path": "new_path",
    "first_replaced_line": "first_line",
    "last_replaced_line": "last_line",
}


def repair_trailing_commas(text: str) -> str:
    """Drop commas that directly precede a closing brace or bracket, ignoring string contents."""
    out: list[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            out.append(char)
            continue
        if char == ",":
            rest = text[index + 1 :].lstrip()
            if rest.startswith(("}", "]")):
                continue
        out.append(char)
    return "".join(out)


def _balanced_objects(text: str) -> list[str]:
    """Return every top-level balanced ``{...}`` span in ``text``, in order."""
    spans: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append(text[start : index + 1])
    return spans


def _loads_object(candidate: str) -> dict[str, Any] | None:
    for attempt in (candidate, repair_trailing_commas(candidate)):
        try:
            parsed = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def iter_json_objects(text: str) -> Iterator[dict[str, Any]]:
    """Yield well-formed JSON objects embedded in ``text``, most explicit candidates first."""
    stripped = text.strip()
    candidates: list[str] = []
    if stripped.startswith("{"):
        candidates.append(stripped)
    candidates.extend(match.group(1) for match in _JSON_FENCE_RE.finditer(text))
    candidates.extend(_balanced_objects(text))
    seen: set[str] = set()
    for candidate in candidates:
        if candidate in seen:
            continue
        seen.add(candidate)
        parsed = _loads_object(candidate)
        if parsed is not None:
            yield parsed


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first well-formed JSON object embedded in ``text``, or None."""
    return next(iter_json_objects(text), None)


def parse_files_markdown(text: str) -> list[GeneratedFile]:
    """Decode ``FILE: <path>`` + fenced-code replies; returns an empty list when none match."""
    for pattern, min_length in ((_FILE_BLOCK_RE, 1), (_FENCE_PATH_RE, 1), (_LOOSE_FILE_BLOCK_RE, 11)):
        files: list[GeneratedFile] = []
        for match in pattern.finditer(text):
            path = match.group(1).strip().strip("`*")
            content = match.group(2).strip()
            if path and len(content) >= min_length:
                try:
                    files.append(GeneratedFile(path=path, content=content))
                except ValidationError:
                    logger.debug("Skipping markdown file block with invalid path %r", path)
        if files:
            return files
    return []


def has_code_block(text: str) -> bool:
    return _CODE_FENCE_RE.search(text) is not None


def extract_code_block(text: str) -> str:
    """Return the body of the first fenced code block, or the stripped text if there is none."""
    match = _CODE_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _normalize_action(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return raw
    action = dict(raw)
    if "type" not in action:
        for key in ("action", "tool", "name"):
            if key in action:
                action["type"] = action.pop(key)
                break
    if isinstance(action.get("args"), dict):
        action.update(action.pop("args"))
    raw_type = str(action.get("type", "")).strip().lower()
    action["type"] = _ACTION_TYPE_ALIASES.get(raw_type, raw_type)
    for alias, canonical in _ACTION_FIELD_ALIASES.items():
        if alias in action and canonical not in action:
            action[canonical] = action.pop(alias)
    return action


def _coerce_payload(payload: dict[str, Any]) -> GenerationResponse | None:
    if "kind" in payload:
        data = dict(payload)
        if data.get("kind") == "actions":
            data["actions"] = [_normalize_action(item) for item in data.get("actions", [])]
        return _RESPONSE_ADAPTER.validate_python(data)
    if isinstance(payload.get("files"), list):
        return FilesResponse.model_validate(
            {"files": payload["files"], "summary": str(payload.get("summary", ""))}
        )
    if isinstance(payload.get("actions"), list):
        return ActionsResponse.model_validate(
            {
                "actions": [_normalize_action(item) for item in payload["actions"]],
                "message": str(payload.get("message", payload.get("summary", ""))),
            }
        )
    for key in ("text", "message", "response", "answer"):
        if isinstance(payload.get(key), str):
            return TextResponse(text=payload[key])
    return None


def decode_response(raw_text: str) -> GenerationResponse:
    """Decode provider text into ``FilesResponse | ActionsResponse | TextResponse``.

    Raises:
        MalformedResponseError: If the reply is empty or a JSON payload is present but
            does not validate against any response shape.
    """
    if not raw_text or not raw_text.strip():
        raise MalformedResponseError("Provider returned an empty response")

    shape_error: ValidationError | None = None
    for payload in iter_json_objects(raw_text):
        try:
            decoded = _coerce_payload(payload)
        except ValidationError as exc:
            shape_error = exc
            continue
        if decoded is not None:
            return decoded

    files = parse_files_markdown(raw_text)
    if files:
        logger.debug("Decoded %d file(s) from FILE: markdown blocks", len(files))
        return FilesResponse(files=files)

    if shape_error is not None:
        raise MalformedResponseError(f"Provider JSON did not match any response shape: {shape_error}") from shape_error
    return TextResponse(text=raw_text.strip())


def _same_path(candidate: str, target_path: str) -> bool:
    try:
        return normalize_file_path(candidate) == target_path
    except ValueError:
        return False


def content_for_target(response: GenerationResponse, target_path: str) -> str:
    """Pick the generated content for ``target_path`` out of any response shape ("" if absent)."""
    if isinstance(response, FilesResponse):
        for generated in response.files:
            if generated.path == target_path:
                return generated.content
        if len(response.files) == 1:
            return response.files[0].content
        return ""
    if isinstance(response, ActionsResponse):
        writes = [action for action in response.actions if isinstance(action, WriteAction)]
        for action in writes:
            if _same_path(action.path, target_path):
                return action.content
        return writes[0].content if len(writes) == 1 else ""
    if isinstance(response, TextResponse):
        return extract_code_block(response.text)
    return ""


