from __future__ import annotations

import enum
import typing
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base model for every persisted ink record.

    - `serialize_for_db` is the single place that controls how a record is
      stored; adapters may post-process the dict but never rename fields.
    - `db_schema` describes the record in backend-agnostic terms for the
      offline schema generator.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    collection_name: ClassVar[str]
    primary_key: ClassVar[Optional[str]] = "id"
    # Fields the store must index, in addition to the primary key.
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        return self.model_dump(mode="python", by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            properties[name] = {
                "type": cls._map_type(field.annotation),
                "nullable": not field.is_required(),
                "default": cls._jsonable_default(field.default),
                "description": field.description,
            }
            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [list(index) for index in cls.indexes],
        }

    @staticmethod
    def _jsonable_default(default: Any) -> Any:
        if isinstance(default, enum.Enum):
            return default.value
        if isinstance(default, (str, int, float, bool)):
            return default
        return None

    @classmethod
    def _map_type(cls, annotation: Any) -> str:
        """
        Map a type annotation to a logical type understood by the generator.
        `Optional[X]` maps like `X`; enums map to strings.
        """
        origin = typing.get_origin(annotation)
        if origin is typing.Union:
            args = [a for a in typing.get_args(annotation) if a is not type(None)]
            if len(args) == 1:
                return cls._map_type(args[0])
            return "object"
        if origin in (list, tuple, set):
            return "array"
        if origin in (dict,) or annotation is dict:
            return "object"

        if isinstance(annotation, type) and issubclass(annotation, enum.Enum):
            return "string"
        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"
        if annotation is datetime:
            return "datetime"

        name = getattr(annotation, "__name__", "object")
        return name.lower()
