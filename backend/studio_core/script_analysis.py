"""Recover a script breakdown (characters, scenes, tasks) from model output."""

from __future__ import annotations

import logging
from numbers import Number
from typing import Any

from studio_core.json_repair import (
    DEFAULT_MAX_REPAIR_ITERATIONS,
    ParseFailure,
    detect_truncation,
    normalize,
    parse_with_repair,
)
from studio_core.schemas import ScriptAnalysis

logger = logging.getLogger(__name__)


def _coerce_list(data: dict[str, Any], key: str, *, required: bool = True) -> list[dict[str, Any]]:
    value = data.get(key)
    if not isinstance(value, list):
        if required:
            logger.warning("script_analysis.missing_list field=%s using=[]", key)
        return []
    items = [item for item in value if isinstance(item, dict)]
    if len(items) != len(value):
        logger.warning(
            "script_analysis.dropped_items field=%s dropped=%s",
            key,
            len(value) - len(items),
        )
    return items


def _coerce_modules(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        logger.warning("script_analysis.missing_object field=modules using=defaults")
        return {}
    modules = dict(value)
    for key in ("logline", "concept"):
        if not modules.get(key):
            logger.warning("script_analysis.missing_field field=modules.%s using=default", key)
            modules.pop(key, None)
        elif not isinstance(modules[key], str):
            modules[key] = str(modules[key])
    return modules


def _coerce_metadata(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        logger.warning("script_analysis.missing_object field=metadata using=defaults")
        return {}
    metadata = dict(value)

    hook_score = metadata.get("hookScore")
    if isinstance(hook_score, bool) or not isinstance(hook_score, Number):
        logger.warning("script_analysis.missing_field field=metadata.hookScore using=default")
        metadata.pop("hookScore", None)

    audience = metadata.get("audience")
    if not audience:
        metadata.pop("audience", None)
    elif not isinstance(audience, str):
        metadata["audience"] = str(audience)

    titles = metadata.get("suggestedTitles")
    if not isinstance(titles, list):
        logger.warning("script_analysis.missing_field field=metadata.suggestedTitles using=default")
        metadata.pop("suggestedTitles", None)
    else:
        metadata["suggestedTitles"] = [str(title) for title in titles]
    return metadata


def coerce_script_analysis(data: Any) -> ScriptAnalysis:
    """Fill missing or malformed sections of a parsed breakdown with defaults."""
    if not isinstance(data, dict):
        raise TypeError("Parsed data is not an object")
    return ScriptAnalysis(
        characters=_coerce_list(data, "characters"),
        scenes=_coerce_list(data, "scenes"),
        tasks=_coerce_list(data, "tasks", required=False),
        modules=_coerce_modules(data.get("modules")),
        metadata=_coerce_metadata(data.get("metadata")),
    )


def parse_script_analysis(
    raw_text: str,
    *,
    max_iterations: int = DEFAULT_MAX_REPAIR_ITERATIONS,
) -> ScriptAnalysis:
    """Normalize, repair and coerce a script-analysis response.

    Raises ``ParseFailure`` when the response cannot be recovered or does not
    hold a JSON object.
    """
    report = detect_truncation(raw_text or "")
    if report.is_truncated:
        logger.warning(
            "script_analysis.possible_truncation braces=%s/%s brackets=%s/%s length=%s",
            report.open_braces,
            report.close_braces,
            report.open_brackets,
            report.close_brackets,
            report.length,
        )

    cleaned = normalize(raw_text)
    data = parse_with_repair(
        cleaned,
        original_length=report.length,
        max_iterations=max_iterations,
    )
    try:
        return coerce_script_analysis(data)
    except TypeError as exc:
        raise ParseFailure.from_text(str(exc), cleaned, original_length=report.length) from exc
