"""Placeholder extraction, repair and author-time validation."""
import re
from typing import List

from formflow.models.templates import PlaceholderValidation

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
PLACEHOLDER_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")
MAX_PLACEHOLDER_LENGTH = 50

_SMART_DOUBLE_QUOTES = re.compile(r"[\u201C\u201D\u201E\u201F]")
_SMART_SINGLE_QUOTES = re.compile(r"[\u2018\u2019\u201A\u201B]")
_ZERO_WIDTH = re.compile(r"[\u200B-\u200D\uFEFF]")
_OPEN_BRACES = re.compile(r"\{\s*\{\s*")
_CLOSE_BRACES = re.compile(r"\s*\}\s*\}")


def repair_placeholder_formatting(text: str) -> str:
    """Undo the damage word processors do to {{placeholder}} markers.

    Straightens smart quotes, strips zero-width characters and collapses
    whitespace inside and between the braces.
    """
    if not text:
        return text or ""
    text = _ZERO_WIDTH.sub("", text)
    text = _SMART_DOUBLE_QUOTES.sub('"', text)
    text = _SMART_SINGLE_QUOTES.sub("'", text)
    text = _OPEN_BRACES.sub("{{", text)
    text = _CLOSE_BRACES.sub("}}", text)
    return PLACEHOLDER_PATTERN.sub(lambda m: "{{" + m.group(1).strip() + "}}", text)


def extract_placeholders(text: str) -> List[str]:
    """Distinct placeholder names in `text`, trimmed, in order of first occurrence.

    Names are case-sensitive. Non-conforming names are still returned.
    """
    if not text:
        return []
    names = (match.group(1).strip() for match in PLACEHOLDER_PATTERN.finditer(text))
    return list(dict.fromkeys(name for name in names if name))


def validate_placeholders(placeholders: List[str]) -> PlaceholderValidation:
    """Author-time naming feedback. Warnings only, never errors."""
    warnings = []
    for name in placeholders:
        if " " in name:
            warnings.append(f'Placeholder "{name}" contains spaces - consider using camelCase')
        if len(name) > MAX_PLACEHOLDER_LENGTH:
            warnings.append(f'Placeholder "{name}" is very long - consider shortening')
        if not PLACEHOLDER_NAME_PATTERN.match(name):
            warnings.append(
                f'Placeholder "{name}" should start with a letter and contain only '
                f'letters, numbers, and underscores'
            )
    return PlaceholderValidation(is_valid=not warnings, warnings=warnings)
