from datetime import datetime, date
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, SerializationInfo, field_serializer
from pydantic.alias_generators import to_camel


class CamelCaseBaseModel(BaseModel):
    """
    Base model with camelCase field aliases and automatic serialization.

    Stored documents (messages, delivery records) use camelCase keys while the
    Python code works with snake_case attributes:

    - Input: camelCase keys are accepted, snake_case names as well.
    - Output: `model_dump(by_alias=True)` gives the stored document shape.
    - Auto-serialization: Enums, dates and nested models become plain values.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_serializer("*")
    def serialize_any(self, value: Any, info: SerializationInfo):
        """Global serializer for all fields"""
        return _plain(value, info.by_alias)


def _plain(value: Any, by_alias: bool) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=by_alias)

    # IntFlag / str enums keep their raw value
    if isinstance(value, Enum):
        return value.value

    # Handle datetime objects (must come before date check)
    if isinstance(value, datetime):
        return value.isoformat()

    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, (list, tuple, set)):
        return [_plain(item, by_alias) for item in value]

    if isinstance(value, dict):
        return {key: _plain(val, by_alias) for key, val in value.items()}

    return value
