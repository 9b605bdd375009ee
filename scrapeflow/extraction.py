"""Turn a rendered page into raw records using an ``ExtractionConfig``.

The engine only needs the element-handle surface Playwright exposes
(``query_selector``, ``query_selector_all``, ``text_content``, ``inner_html``,
``get_attribute``), so it runs against a live ``Page`` or any stand-in.
"""
from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from .errors import ExtractionError
from .models import ExtractionConfig, FieldRule, FieldSpec, Transform

LOGGER = logging.getLogger(__name__)

_NON_NUMERIC = re.compile(r"[^0-9.\-]+")
_LEADING_FLOAT = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")


class Element(Protocol):
    def query_selector(self, selector: str) -> Optional["Element"]: ...

    def query_selector_all(self, selector: str) -> List["Element"]: ...

    def text_content(self) -> Optional[str]: ...

    def inner_html(self) -> str: ...

    def get_attribute(self, name: str) -> Optional[str]: ...


class Surface(Protocol):
    def query_selector_all(self, selector: str) -> List[Element]: ...


def parse_number(value: str) -> float:
    """Parse the leading number of ``value`` after dropping currency noise.

    ``"$1,234.50"`` gives ``1234.5``. Input with no number gives ``NaN``,
    which is returned as-is rather than being turned into ``None``.
    """
    cleaned = _NON_NUMERIC.sub("", value)
    match = _LEADING_FLOAT.match(cleaned)
    if not match:
        return math.nan
    return float(match.group(0))


def apply_transform(value: str, transform: Optional[Transform]) -> Any:
    """Apply a field transform to a non-null string value.

    ``boolean`` is true for every non-empty string, ``"false"`` included.
    """
    if transform is None:
        return value
    if transform == Transform.NUMBER:
        return parse_number(value)
    if transform == Transform.BOOLEAN:
        return bool(value)
    if transform == Transform.LOWERCASE:
        return value.lower()
    if transform == Transform.UPPERCASE:
        return value.upper()
    return value


def _read(element: Element, attribute: str) -> Optional[str]:
    if attribute == "text":
        text = element.text_content()
        return text.strip() if text is not None else None
    if attribute == "html":
        return element.inner_html().strip()
    return element.get_attribute(attribute)


def _extract_rule(container: Element, rule: FieldRule) -> Any:
    if rule.multiple:
        targets = [container] if rule.targets_container else container.query_selector_all(rule.selector)
        values = []
        for target in targets:
            value = _read(target, rule.attribute)
            if value is not None:
                values.append(apply_transform(value, rule.transform))
        return values

    target = container if rule.targets_container else container.query_selector(rule.selector)
    if target is None:
        return None
    value = _read(target, rule.attribute)
    if value is None:
        return None
    return apply_transform(value, rule.transform)


def extract_field(container: Element, spec: FieldSpec) -> Any:
    """Evaluate one field spec against an item container.

    Raises
    ------
    ExtractionError
        If the surface fails while the field is evaluated
    """
    try:
        if isinstance(spec, str):
            target = container.query_selector(spec)
            if target is None:
                return None
            text = (target.text_content() or "").strip()
            return text or None
        return _extract_rule(container, spec)
    except Exception as exc:
        raise ExtractionError(str(exc)) from exc


def extract_record(container: Element, fields: Dict[str, FieldSpec]) -> Dict[str, Any]:
    """Build one record; a failing field becomes ``None``."""
    record: Dict[str, Any] = {}
    for name, spec in fields.items():
        try:
            record[name] = extract_field(container, spec)
        except ExtractionError as exc:
            LOGGER.debug("Field %r failed: %s", name, exc)
            record[name] = None
    return record


def extract_records(surface: Surface, config: ExtractionConfig) -> List[Dict[str, Any]]:
    """Extract one raw record per element matching ``itemContainerSelector``."""
    containers = surface.query_selector_all(config.item_container_selector)
    LOGGER.debug("Found %d item containers for %r", len(containers), config.item_container_selector)
    return [extract_record(container, config.fields) for container in containers]


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)) and not value:
        return False
    return True


def is_valid(record: Dict[str, Any], require_fields: Optional[Iterable[str]] = None) -> bool:
    """Check a record against the validity rule.

    With ``require_fields`` every named field must be non-null and non-empty;
    without it at least one field must be non-null.
    """
    if require_fields:
        return all(_is_present(record.get(field)) for field in require_fields)
    return any(value is not None for value in record.values())


def filter_valid(
    records: Sequence[Dict[str, Any]],
    require_fields: Optional[Iterable[str]] = None,
) -> List[Dict[str, Any]]:
    return [record for record in records if is_valid(record, require_fields)]
