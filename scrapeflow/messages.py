"""Wire schema for the ``tasks`` and ``results`` channels.

Every message is JSON. Task messages carry the full extraction config;
result messages are tagged by their ``status`` field::

    {"taskId": ..., "sourceUrl": ..., "page": 1, "status": "processing", "data": [...]}
    {"taskId": ..., "sourceUrl": ..., "status": "completed", "totalPages": 2}
    {"taskId": ..., "sourceUrl": ..., "status": "failed", "error": "..."}

Messages are always published with the task id as partition key so that all
results of one task are consumed in emission order.
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from .errors import ConfigError, MessagingError
from .models import ExtractionConfig, Task


class _Message(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    task_id: str

    @property
    def key(self) -> str:
        """Partition key."""
        return self.task_id


class TaskMessage(_Message):
    """Projection of a Task sent to workers."""

    url: str
    pages: int = Field(1, ge=1, validation_alias=AliasChoices("pages", "maxPages"))
    data_type: str
    config: ExtractionConfig

    @classmethod
    def from_task(cls, task: Task) -> TaskMessage:
        return cls(
            task_id=task.id,
            url=task.url,
            pages=task.max_pages,
            data_type=task.data_type,
            config=task.config,
        )


class ProcessingResult(_Message):
    """A page's worth of valid records."""

    status: Literal["processing"] = "processing"
    source_url: str
    page: int = Field(ge=1)
    items: List[Dict[str, Any]] = Field(alias="data")
    label: Optional[str] = None


class CompletedResult(_Message):
    status: Literal["completed"] = "completed"
    source_url: str
    total_pages: int = Field(ge=0)


class FailedResult(_Message):
    status: Literal["failed"] = "failed"
    source_url: str
    error: str


ResultMessage = Annotated[
    Union[ProcessingResult, CompletedResult, FailedResult],
    Field(discriminator="status"),
]

_RESULT_ADAPTER: TypeAdapter = TypeAdapter(ResultMessage)


def encode(message: _Message) -> str:
    """Serialize a message to its JSON wire form.

    ``json`` is used directly (not ``model_dump_json``) so that float NaN
    produced by the ``number`` transform survives the trip.
    """
    return json.dumps(message.model_dump(mode="python", by_alias=True))


def _load(raw: Union[str, bytes]) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MessagingError(f"Undecodable message payload: {exc}") from exc


def decode_task(raw: Union[str, bytes]) -> TaskMessage:
    """Parse a task message.

    Raises
    ------
    MessagingError
        Payload is not JSON
    ConfigError
        Payload is JSON but not a valid task message
    """
    data = _load(raw)
    try:
        return TaskMessage.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid task message: {exc}") from exc


def decode_result(raw: Union[str, bytes]) -> Union[ProcessingResult, CompletedResult, FailedResult]:
    """Parse a result message, dispatching on ``status``."""
    data = _load(raw)
    try:
        return _RESULT_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise MessagingError(f"Invalid result message: {exc}") from exc


def peek_task_id(raw: Union[str, bytes]) -> Optional[str]:
    """Best-effort ``taskId`` lookup for payloads that failed validation."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if isinstance(data, dict) and isinstance(data.get("taskId"), str):
        return data["taskId"]
    return None
