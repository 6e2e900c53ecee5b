"""Recovery of JSON values from unreliable language-model output.

Model responses routinely arrive wrapped in prose or markdown fences, cut off
mid-structure by token limits, or carrying dialogue with unescaped quotes.
``normalize`` rewrites such text into something a standard JSON parser can
accept, and ``parse_with_repair`` layers a relaxed parse plus a bounded,
position-guided quote repair loop on top of it.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import json5

logger = logging.getLogger(__name__)

DEFAULT_MAX_REPAIR_ITERATIONS = 50
DIAGNOSTIC_SAMPLE_CHARS = 500

_FENCE_RE = re.compile(r"```[A-Za-z0-9_+-]*")
_STRING_TERMINATORS = frozenset(":,}]")
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


class ParseFailure(ValueError):
    """Raised when no amount of automated repair renders the text parseable."""

    def __init__(
        self,
        message: str,
        *,
        original_length: int,
        cleaned_length: int,
        head_sample: str,
        tail_sample: str,
    ) -> None:
        super().__init__(message)
        self.original_length = original_length
        self.cleaned_length = cleaned_length
        self.head_sample = head_sample
        self.tail_sample = tail_sample

    @classmethod
    def from_text(
        cls,
        message: str,
        cleaned: str,
        original_length: int | None = None,
    ) -> "ParseFailure":
        return cls(
            message,
            original_length=len(cleaned) if original_length is None else original_length,
            cleaned_length=len(cleaned),
            head_sample=cleaned[:DIAGNOSTIC_SAMPLE_CHARS],
            tail_sample=cleaned[-DIAGNOSTIC_SAMPLE_CHARS:] if cleaned else "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": str(self),
            "original_length": self.original_length,
            "cleaned_length": self.cleaned_length,
            "head_sample": self.head_sample,
            "tail_sample": self.tail_sample,
        }


@dataclass(frozen=True, slots=True)
class TruncationReport:
    """Raw bracket counts for a model response."""

    open_braces: int
    close_braces: int
    open_brackets: int
    close_brackets: int
    length: int

    @property
    def is_truncated(self) -> bool:
        return self.open_braces != self.close_braces or self.open_brackets != self.close_brackets


def detect_truncation(raw_text: str) -> TruncationReport:
    """Count braces and brackets in the raw text to flag a likely cut-off response."""
    return TruncationReport(
        open_braces=raw_text.count("{"),
        close_braces=raw_text.count("}"),
        open_brackets=raw_text.count("["),
        close_brackets=raw_text.count("]"),
        length=len(raw_text),
    )


def _next_significant(text: str, start: int) -> str | None:
    """Return the first non-whitespace character at or after ``start``."""
    for index in range(start, len(text)):
        if not text[index].isspace():
            return text[index]
    return None


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def _escape_inner_quotes(text: str) -> str:
    """Escape quotes that sit inside string content rather than closing it.

    A quote seen while inside a string only terminates the string when the
    next non-whitespace character is structural (``: , } ]``) or the input
    ends. Raw control characters inside strings are escaped as well.
    """
    out: list[str] = []
    in_string = False
    escape_next = False
    for index, ch in enumerate(text):
        if escape_next:
            out.append(ch)
            escape_next = False
            continue
        if not in_string:
            if ch == '"':
                in_string = True
            out.append(ch)
            continue
        if ch == "\\":
            out.append(ch)
            escape_next = True
        elif ch == '"':
            following = _next_significant(text, index + 1)
            if following is None or following in _STRING_TERMINATORS:
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
        elif ch in _CONTROL_ESCAPES:
            out.append(_CONTROL_ESCAPES[ch])
        else:
            out.append(ch)
    return "".join(out)


def _last_structural_close(text: str, start: int, closer: str) -> int:
    """Index of the last ``closer`` outside string literals, scanning from ``start``."""
    last = -1
    in_string = False
    escape_next = False
    for index in range(start, len(text)):
        ch = text[index]
        if escape_next:
            escape_next = False
        elif in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == closer:
            last = index
    return last


def _wraps_objects(text: str, first_bracket: int, first_brace: int) -> bool:
    """Whether the first ``[`` opens an array whose first element is the first ``{``."""
    if first_bracket == -1:
        return False
    if first_brace == -1:
        return True
    return first_bracket < first_brace and not text[first_bracket + 1 : first_brace].strip()


def _extract_outer_value(text: str) -> str:
    """Slice the text down to the outermost JSON object (or array of objects)."""
    first_brace = text.find("{")
    first_bracket = text.find("[")
    if first_brace == -1 and first_bracket == -1:
        return text
    if _wraps_objects(text, first_bracket, first_brace):
        start, closer = first_bracket, "]"
    else:
        start, closer = first_brace, "}"
    end = _last_structural_close(text, start, closer)
    if end == -1:
        return text[start:]
    return text[start : end + 1]


def _drop_trailing_commas_once(text: str) -> str:
    out: list[str] = []
    in_string = False
    escape_next = False
    for index, ch in enumerate(text):
        if escape_next:
            escape_next = False
        elif in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "," and _next_significant(text, index + 1) in ("}", "]"):
            continue
        out.append(ch)
    return "".join(out)


def _remove_trailing_commas(text: str) -> str:
    while True:
        cleaned = _drop_trailing_commas_once(text)
        if cleaned == text:
            return cleaned
        text = cleaned


def _strip_comments(text: str) -> str:
    """Remove ``//`` line comments and ``/* */`` blocks outside string literals."""
    out: list[str] = []
    in_string = False
    escape_next = False
    index = 0
    length = len(text)
    while index < length:
        ch = text[index]
        if escape_next:
            escape_next = False
        elif in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif text.startswith("//", index):
            newline = text.find("\n", index)
            index = length if newline == -1 else newline
            continue
        elif text.startswith("/*", index):
            block_end = text.find("*/", index + 2)
            index = length if block_end == -1 else block_end + 2
            continue
        out.append(ch)
        index += 1
    return "".join(out)


def _complete_truncation(text: str) -> str:
    """Close a dangling string, then append missing ``]`` and ``}`` closers."""
    in_string = False
    escape_next = False
    open_braces = close_braces = open_brackets = close_brackets = 0
    for ch in text:
        if escape_next:
            escape_next = False
        elif in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            open_braces += 1
        elif ch == "}":
            close_braces += 1
        elif ch == "[":
            open_brackets += 1
        elif ch == "]":
            close_brackets += 1

    if escape_next:
        text = text[:-1]
    if in_string:
        text += '"'
    text += "]" * max(open_brackets - close_brackets, 0)
    text += "}" * max(open_braces - close_braces, 0)
    return text


def normalize(raw_text: str) -> str:
    """Return a best-effort JSON text for ``raw_text``. Never raises."""
    clean = _strip_fences(raw_text or "")
    clean = _escape_inner_quotes(clean)
    clean = _extract_outer_value(clean)
    clean = _remove_trailing_commas(clean)
    clean = _strip_comments(clean)
    clean = _complete_truncation(clean)
    clean = _remove_trailing_commas(clean)
    clean = clean.replace("\r\n", "\n").replace("\r", "\n")
    clean = clean.replace("\0", "")
    return clean.strip()


def _is_escaped(text: str, index: int) -> bool:
    backslashes = 0
    cursor = index - 1
    while cursor >= 0 and text[cursor] == "\\":
        backslashes += 1
        cursor -= 1
    return backslashes % 2 == 1


def _repair_at(text: str, position: int) -> str | None:
    """Escape the quote responsible for a strict-parse failure at ``position``."""
    if position < len(text) and text[position] == '"' and not _is_escaped(text, position):
        return text[:position] + "\\" + text[position:]
    cursor = min(position, len(text)) - 1
    while cursor >= 0:
        if text[cursor] == '"' and not _is_escaped(text, cursor):
            return text[:cursor] + "\\" + text[cursor:]
        cursor -= 1
    return None


def parse_with_repair(
    text: str,
    *,
    original_length: int | None = None,
    max_iterations: int = DEFAULT_MAX_REPAIR_ITERATIONS,
) -> Any:
    """Parse JSON text, repairing stray quotes guided by parser error positions.

    Raises ``ParseFailure`` when the relaxed parser and the bounded repair loop
    both fail to produce a value.
    """
    try:
        return json5.loads(text)
    except (ValueError, RecursionError) as exc:
        logger.debug("json_repair.relaxed_parse_failed error=%s", exc)

    candidate = text
    for iteration in range(max_iterations):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            repaired = _repair_at(candidate, exc.pos)
            if repaired is None:
                logger.debug("json_repair.no_quote_to_repair position=%s", exc.pos)
                break
            logger.debug(
                "json_repair.escaped_quote iteration=%s position=%s",
                iteration + 1,
                exc.pos,
            )
            candidate = repaired
        except RecursionError:
            logger.debug("json_repair.nesting_too_deep iteration=%s", iteration + 1)
            break

    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, RecursionError) as exc:
        failure = ParseFailure.from_text(
            f"Failed to parse model response after repair: {exc}",
            text,
            original_length=len(text) if original_length is None else original_length,
        )
        logger.error(
            "json_repair.parse_failure original_length=%s cleaned_length=%s head=%r tail=%r",
            failure.original_length,
            failure.cleaned_length,
            failure.head_sample,
            failure.tail_sample,
        )
        raise failure from exc


def loads(raw_text: str, *, max_iterations: int = DEFAULT_MAX_REPAIR_ITERATIONS) -> Any:
    """Normalize raw model output and parse it into a JSON value."""
    return parse_with_repair(
        normalize(raw_text),
        original_length=len(raw_text or ""),
        max_iterations=max_iterations,
    )
