"""Pydantic models shared by the producer, workers and result consumer."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import ConfigError

LOGGER = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Task execution status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class PaginationType(str, Enum):
    """Known URL pagination strategies."""

    QUERY_PARAM = "queryParam"
    PATH = "path"
    REPLACE = "replace"
    OFFSET = "offset"


class Transform(str, Enum):
    """Post-processing applied to a non-null field value."""

    NUMBER = "number"
    BOOLEAN = "boolean"
    LOWERCASE = "lowercase"
    UPPERCASE = "uppercase"


# Playwright knows no networkidle0/2; configs written for puppeteer use them.
_WAIT_UNTIL_ALIASES = {
    "networkidle0": "networkidle",
    "networkidle2": "networkidle",
    "domcontentloaded": "domcontentloaded",
    "load": "load",
    "networkidle": "networkidle",
    "commit": "commit",
}

# Older task payloads nest selectors and use shorter option names.
_LEGACY_KEYS = {
    "waitForSelector": "waitSelector",
    "blockResources": "blockResourceTypes",
    "pageDelay": "pageDelayMs",
    "timeout": "navigationTimeoutMs",
    "selectorTimeout": "selectorTimeoutMs",
    "hasNextPage": "nextPageSelector",
}


class _Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class FieldRule(_Schema):
    """Object form of a field spec."""

    selector: str = Field(min_length=1)
    attribute: str = Field("text", min_length=1)
    transform: Optional[Transform] = None
    multiple: bool = False

    @property
    def targets_container(self) -> bool:
        return self.selector == "."


# A bare string is a selector whose trimmed text is the value.
FieldSpec = Union[str, FieldRule]


class ExtractionConfig(_Schema):
    """Declarative description of how to find items, map fields and paginate."""

    item_container_selector: str = Field(min_length=1)
    fields: Dict[str, FieldSpec]
    pagination_type: str = PaginationType.QUERY_PARAM.value
    page_param: str = "page"
    label_param: str = "label"
    labels: Optional[Tuple[Optional[str], ...]] = None
    max_pages: Optional[int] = Field(None, ge=1)
    items_per_page: int = Field(10, ge=1)
    require_fields: Optional[Tuple[str, ...]] = None
    wait_selector: Optional[str] = None
    wait_until: str = "networkidle"
    scroll_to_bottom: bool = False
    block_resource_types: Tuple[str, ...] = ()
    page_delay_ms: Optional[int] = Field(None, ge=0)
    navigation_timeout_ms: int = Field(90_000, gt=0)
    selector_timeout_ms: int = Field(50_000, gt=0)
    next_page_selector: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _lift_legacy_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        selectors = data.pop("selectors", None)
        if isinstance(selectors, dict):
            data.setdefault("itemContainerSelector", selectors.get("itemContainer"))
            data.setdefault("fields", selectors.get("fields"))
        for old, new in _LEGACY_KEYS.items():
            if old in data:
                data.setdefault(new, data.pop(old))
        return data

    @field_validator("fields")
    @classmethod
    def _check_fields(cls, value: Dict[str, FieldSpec]) -> Dict[str, FieldSpec]:
        if not value:
            raise ValueError("at least one field must be configured")
        for name, spec in value.items():
            if isinstance(spec, str) and not spec.strip():
                raise ValueError(f"field {name!r} has an empty selector")
        return value

    @field_validator("wait_until")
    @classmethod
    def _check_wait_until(cls, value: str) -> str:
        try:
            return _WAIT_UNTIL_ALIASES[value]
        except KeyError:
            raise ValueError(f"unsupported waitUntil event {value!r}") from None

    @model_validator(mode="after")
    def _check_required_fields(self) -> ExtractionConfig:
        unknown = set(self.require_fields or ()) - set(self.fields)
        if unknown:
            raise ValueError(f"requireFields names unknown fields: {sorted(unknown)}")
        if self.pagination_type not in {p.value for p in PaginationType}:
            LOGGER.warning(
                "Unknown paginationType %r: every page will use the base URL",
                self.pagination_type,
            )
        return self

    @classmethod
    def parse(cls, data: Any) -> ExtractionConfig:
        """Validate raw config data, raising ``ConfigError`` on failure."""
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid extraction config: {exc}") from exc

    def label_runs(self) -> Tuple[Optional[str], ...]:
        """Labels to iterate; a config without labels runs once with ``None``."""
        return self.labels or (None,)

    def page_limit(self, task_pages: Optional[int], hard_cap: int) -> int:
        """Last page number to fetch for each label."""
        requested = self.max_pages or task_pages or 1
        return min(hard_cap, requested)


class Task(BaseModel):
    """One unit of requested extraction work."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    url: str
    max_pages: int = 1
    data_type: str
    config: ExtractionConfig
    status: TaskStatus = TaskStatus.PENDING
    current_page: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None


class ScrapedItem(BaseModel):
    """One extracted record, append-only."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_id: str
    source_url: str
    data: Dict[str, Any]
    created_at: datetime = Field(default_factory=utcnow)
