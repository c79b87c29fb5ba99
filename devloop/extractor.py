"""Edit-set extraction from free-form agent output.

Agents are asked for a single JSON object ``{"files": [...], "summary": ...}``
but routinely wrap it in result envelopes, markdown fences or narration, and
sometimes stop mid-object. ``extract`` runs a fixed sequence of strategies
over the response and stops at the first one that yields an edit-set passing
validation:

1. direct-object      input already has the ``{files: [...]}`` shape
2. nested-result      unwrap ``{"type": "result", "result": ...}`` layers
3. schema-validated   whole text or fenced blocks parsed as-is
4. markdown-block     first fenced block mentioning ``files``, cleaned up
5. balanced-brace     complete ``{...}`` spans, last one first
6. truncation-repair  close strings and brackets on unfinished objects
7. raw-fallback       wrap the raw text for manual review (never valid)

Everything here is pure: no file or process I/O.
"""

import json
import re
from collections.abc import Iterator
from typing import Any

from devloop.models import OPERATIONS, EditSet, ExtractionResult, FileEdit, Patch

MAX_UNWRAP_DEPTH = 5
MAX_REPAIR_CUTS = 10
RAW_FALLBACK_PATH = ".devloop/raw-response.md"
RAW_FALLBACK_SUMMARY = "Raw agent response (needs manual review)"

_ALLOWED_TOP_LEVEL = {"files", "summary"}
_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"'})


def extract(raw: Any) -> ExtractionResult:
    """Recover a validated edit-set from an agent response.

    Args:
        raw: Agent output: a string, an already-decoded JSON value, or an
            EditSet (returned unchanged)

    Returns:
        ExtractionResult. ``valid`` is True only for a structural success;
        the raw-fallback result carries an edit-set but is never valid.
    """
    if isinstance(raw, EditSet):
        return ExtractionResult(
            valid=True,
            edit_set=raw,
            strategy_used="direct-object",
            strategies_tried=["direct-object"],
        )

    tried: list[str] = []
    errors: list[str] = []
    warnings: list[str] = []

    def success(edit_set: EditSet, strategy: str, found: list[str]) -> ExtractionResult:
        return ExtractionResult(
            valid=True,
            edit_set=edit_set,
            warnings=found,
            strategy_used=strategy,
            strategies_tried=tried,
        )

    # 1. direct object
    if isinstance(raw, dict) and isinstance(raw.get("files"), list):
        tried.append("direct-object")
        edit_set, errs, warns = validate_edit_set(raw)
        if edit_set is not None:
            return success(edit_set, "direct-object", warns)
        errors.extend(errs)

    # 2. nested result envelopes
    unwrapped, depth = unwrap_result(raw)
    if depth > 0:
        tried.append("nested-result")
        if isinstance(unwrapped, dict) and isinstance(unwrapped.get("files"), list):
            edit_set, errs, warns = validate_edit_set(unwrapped)
            if edit_set is not None:
                return success(edit_set, "nested-result", warns)
            errors.extend(errs)
        raw = unwrapped

    text = _as_text(raw)
    if not text.strip():
        tried.append("raw-fallback")
        return ExtractionResult(
            valid=False,
            errors=errors or ["Empty response"],
            strategies_tried=tried,
        )
    text = unescape_text(text)

    repair_sources: list[str] = []

    # 3. schema-validated (bare JSON, then fenced blocks as-is)
    tried.append("schema-validated")
    candidates = [text.strip()] + [block.strip() for block in _FENCE_RE.findall(text)]
    for candidate in candidates:
        parsed = _loads(candidate)
        if parsed is None:
            if "files" in candidate and candidate.startswith("{"):
                repair_sources.append(candidate)
            continue
        edit_set, errs, warns = _validate_candidate(parsed)
        if edit_set is not None:
            return success(edit_set, "schema-validated", warns)
        errors.extend(errs)

    # 4. first fenced block mentioning files, including an unterminated one
    tried.append("markdown-block")
    block = _first_files_block(text)
    if block is not None:
        parsed = _loads(_clean_json(block))
        if parsed is not None:
            edit_set, errs, warns = _validate_candidate(parsed)
            if edit_set is not None:
                return success(edit_set, "markdown-block", warns)
            errors.extend(errs)
        else:
            repair_sources.append(block)

    # 5. balanced-brace scan, last complete object first
    tried.append("balanced-brace")
    spans, open_start = find_json_objects(text)
    for span in reversed(spans):
        if "files" not in span:
            continue
        parsed = _loads(span) or _loads(_clean_json(span))
        if parsed is None:
            repair_sources.append(span)
            continue
        edit_set, errs, warns = _validate_candidate(parsed)
        if edit_set is not None:
            return success(edit_set, "balanced-brace", warns)
        errors.extend(errs)
    if open_start is not None and "files" in text[open_start:]:
        repair_sources.append(text[open_start:])

    # 6. truncation repair
    if repair_sources:
        tried.append("truncation-repair")
        for source in _dedupe(reversed(repair_sources)):
            for repaired in iter_repairs(source):
                parsed = _loads(repaired)
                if parsed is None:
                    continue
                edit_set, errs, warns = _validate_candidate(parsed)
                if edit_set is not None:
                    warnings = warns + ["Response was truncated and has been repaired"]
                    return success(edit_set, "truncation-repair", warnings)
                errors.extend(errs)

    # 7. raw fallback
    tried.append("raw-fallback")
    fallback = EditSet(
        files=(FileEdit(path=RAW_FALLBACK_PATH, operation="create", content=text),),
        summary=RAW_FALLBACK_SUMMARY,
    )
    return ExtractionResult(
        valid=False,
        edit_set=fallback,
        errors=_dedupe(errors) or ["No JSON edit-set found in response"],
        warnings=warnings,
        strategy_used="raw-fallback",
        strategies_tried=tried,
    )


def validate_edit_set(data: Any) -> tuple[EditSet | None, list[str], list[str]]:
    """Validate a decoded value against the edit-set wire schema.

    Unknown top-level keys and an empty summary are warnings. Per-file keys
    other than path, operation, content and patches are dropped.

    Args:
        data: Decoded JSON value

    Returns:
        Tuple of (edit_set or None, errors, warnings)
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not isinstance(data, dict):
        return None, ["Response must be a JSON object"], warnings

    files = data.get("files")
    if "files" not in data:
        errors.append('missing required field "files"')
    elif not isinstance(files, list):
        errors.append('"files" must be an array')

    summary = data.get("summary")
    if "summary" not in data:
        errors.append('missing required field "summary"')
    elif not isinstance(summary, str):
        errors.append('"summary" must be a string')
    elif not summary.strip():
        warnings.append("summary is empty")

    for key in data:
        if key not in _ALLOWED_TOP_LEVEL:
            warnings.append(f'unexpected property "{key}"')

    edits: list[FileEdit] = []
    if isinstance(files, list):
        for index, item in enumerate(files):
            edit = _validate_file(index, item, errors)
            if edit is not None:
                edits.append(edit)

    if errors:
        return None, errors, warnings
    return EditSet(files=tuple(edits), summary=summary), errors, warnings


def _validate_file(index: int, item: Any, errors: list[str]) -> FileEdit | None:
    prefix = f"files[{index}]"
    if not isinstance(item, dict):
        errors.append(f"{prefix}: must be an object")
        return None

    count = len(errors)
    path = item.get("path")
    if "path" not in item:
        errors.append(f'{prefix}: missing required field "path"')
    elif not isinstance(path, str) or not path.strip():
        errors.append(f'{prefix}: "path" must be a non-empty string')

    operation = item.get("operation")
    if "operation" not in item:
        errors.append(f'{prefix}: missing required field "operation"')
    elif operation not in OPERATIONS:
        errors.append(
            f'{prefix}: invalid operation "{operation}" '
            f"(expected {', '.join(OPERATIONS)})"
        )

    content = item.get("content")
    patches: list[Patch] = []
    if operation in ("create", "update"):
        if not isinstance(content, str) or not content:
            errors.append(f'{prefix}: operation "{operation}" requires non-empty "content"')
    elif operation == "patch":
        raw_patches = item.get("patches")
        if not isinstance(raw_patches, list) or not raw_patches:
            errors.append(f'{prefix}: operation "patch" requires a non-empty "patches" array')
        else:
            for j, raw_patch in enumerate(raw_patches):
                patch = _validate_patch(f"{prefix}.patches[{j}]", raw_patch, errors)
                if patch is not None:
                    patches.append(patch)

    if len(errors) > count:
        return None
    if operation in ("create", "update"):
        return FileEdit(path=path, operation=operation, content=unescape_content(content))
    if operation == "patch":
        return FileEdit(path=path, operation="patch", patches=tuple(patches))
    return FileEdit(path=path, operation="delete")


def _validate_patch(prefix: str, raw: Any, errors: list[str]) -> Patch | None:
    if not isinstance(raw, dict):
        errors.append(f"{prefix}: must be an object")
        return None
    ok = True
    for key in ("search", "replace"):
        if key not in raw:
            errors.append(f'{prefix}: missing required field "{key}"')
            ok = False
        elif not isinstance(raw[key], str):
            errors.append(f'{prefix}: "{key}" must be a string')
            ok = False
    if ok and not raw["search"]:
        errors.append(f'{prefix}: "search" must not be empty')
        ok = False
    return Patch(search=raw["search"], replace=raw["replace"]) if ok else None


def unwrap_result(value: Any) -> tuple[Any, int]:
    """Peel ``{"type": "result", "result": ...}`` envelopes off a response.

    String layers holding a JSON object are decoded along the way. At most
    MAX_UNWRAP_DEPTH envelopes are removed.

    Args:
        value: Decoded JSON value or raw string

    Returns:
        Tuple of (innermost value, number of envelopes removed)
    """
    current = value
    depth = 0
    while depth < MAX_UNWRAP_DEPTH:
        obj = _as_object(current)
        if obj is None or "files" in obj or "result" not in obj:
            break
        current = obj["result"]
        depth += 1

    if depth > 0:
        inner = _as_object(current)
        if inner is not None:
            current = inner
    return current, depth


def find_json_objects(text: str) -> tuple[list[str], int | None]:
    """Find complete top-level ``{...}`` spans in text.

    Braces inside string literals are ignored, honouring backslash escapes.
    Quotes are only tracked inside an object so stray quotes in surrounding
    prose cannot desynchronise the scan.

    Args:
        text: Arbitrary text

    Returns:
        Tuple of (complete spans in order, start index of an unterminated
        trailing object or None)
    """
    spans: list[str] = []
    depth = 0
    start: int | None = None
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                spans.append(text[start : i + 1])
                start = None

    return spans, (start if depth > 0 else None)


def repair_truncated_json(text: str) -> str | None:
    """Return the first repair of ``text`` that parses as JSON, if any."""
    for candidate in iter_repairs(text):
        if _loads(candidate) is not None:
            return candidate
    return None


def iter_repairs(text: str) -> Iterator[str]:
    """Yield progressively more aggressive repairs of a truncated JSON text.

    The first candidate strips trailing commas, closes an unterminated string
    and appends the missing closing brackets. Later candidates cut the text
    back to earlier top-level-or-nested comma boundaries, dropping the
    unfinished trailing element, and close what remains.
    """
    text = text.strip()
    if not text:
        return
    yield _close_structure(text)

    cut = text
    for _ in range(MAX_REPAIR_CUTS):
        index = _last_comma_outside_string(cut)
        if index is None:
            return
        cut = cut[:index]
        yield _close_structure(cut)


def _close_structure(text: str) -> str:
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()

    repaired = text
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    repaired = repaired.rstrip()
    if repaired.endswith(":"):
        repaired += " null"
    repaired = _clean_json(repaired).rstrip()
    while repaired.endswith(","):
        repaired = repaired[:-1].rstrip()
    return repaired + "".join(reversed(stack))


def _last_comma_outside_string(text: str) -> int | None:
    last = None
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            last = i
    return last


def _clean_json(text: str) -> str:
    """Remove trailing commas before closing brackets, outside strings."""
    text = text.translate(_SMART_QUOTES)
    out: list[str] = []
    in_string = False
    escaped = False
    i = 0
    while i < len(text):
        ch = text[i]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < len(text) and text[j].isspace():
                j += 1
            if j < len(text) and text[j] in "}]":
                i += 1
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def unescape_text(text: str) -> str:
    """Undo one level of JSON string escaping on a double-escaped response."""
    if '\\"files\\"' not in text:
        return text
    try:
        decoded = json.loads(f'"{text}"')
    except json.JSONDecodeError:
        decoded = (
            text.replace('\\"', '"')
            .replace("\\n", "\n")
            .replace("\\t", "\t")
            .replace("\\\\", "\\")
        )
    return decoded if isinstance(decoded, str) else text


def unescape_content(content: str) -> str:
    """Turn literal ``\\n`` sequences into newlines for double-escaped content.

    Only applies when the content has no real newline but several escaped
    ones, so single-line content that legitimately contains ``\\n`` survives.
    """
    if "\n" in content or content.count("\\n") < 2:
        return content
    return (
        content.replace("\\r\\n", "\n")
        .replace("\\n", "\n")
        .replace("\\t", "\t")
        .replace('\\"', '"')
    )


def _validate_candidate(parsed: Any) -> tuple[EditSet | None, list[str], list[str]]:
    inner, _ = unwrap_result(parsed)
    if not isinstance(inner, dict) or "files" not in inner:
        return None, [], []
    return validate_edit_set(inner)


def _first_files_block(text: str) -> str | None:
    for block in _FENCE_RE.findall(text):
        if "files" in block and block.strip().startswith("{"):
            return block.strip()
    matches = list(_OPEN_FENCE_RE.finditer(text))
    if len(matches) % 2 == 1:
        tail = text[matches[-1].end() :].strip()
        if "files" in tail and tail.startswith("{"):
            return tail
    return None


def _as_object(value: Any) -> dict | None:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        parsed = _loads(value.strip())
        if isinstance(parsed, dict):
            return parsed
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def _loads(text: str) -> Any:
    if not text or text[0] not in "{[":
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _dedupe(items: Any) -> list:
    seen: list = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen
