"""Conversion between ledger records and JSON-safe dicts."""

import json
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import lru_cache
from typing import Any, Union, get_args, get_origin, get_type_hints

from .core import PersistenceError


def serialize_value(value: Any) -> Any:
    """Serialize a value for JSON output."""
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def to_dict(record: Any) -> dict:
    """Convert a record dataclass to a JSON-safe dict without deep copying."""
    if not is_dataclass(record):
        raise PersistenceError(f"Cannot encode {type(record).__name__}: not a record")
    return {f.name: serialize_value(getattr(record, f.name)) for f in fields(record)}


@lru_cache(maxsize=None)
def _field_types(cls: type) -> dict:
    return get_type_hints(cls)


def _deserialize_value(tp: Any, value: Any) -> Any:
    if value is None:
        return None
    if get_origin(tp) is Union:
        args = [a for a in get_args(tp) if a is not type(None)]
        tp = args[0] if len(args) == 1 else Any
    if tp is Decimal:
        return Decimal(value)
    # datetime is a subclass of date, check it first
    if tp is datetime:
        return datetime.fromisoformat(value)
    if tp is date:
        return date.fromisoformat(value)
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(value)
    return value


def from_dict(cls: type, data: dict) -> Any:
    """Build a record of type cls from a dict produced by to_dict()."""
    types = _field_types(cls)
    kwargs = {}
    for f in fields(cls):
        if f.name in data:
            kwargs[f.name] = _deserialize_value(types[f.name], data[f.name])
    try:
        return cls(**kwargs)
    except (TypeError, ValueError) as e:
        raise PersistenceError(f"Cannot decode {cls.__name__}: {e}") from e


def dumps(record: Any) -> str:
    return json.dumps(to_dict(record), sort_keys=True)


def loads(cls: type, text: str) -> Any:
    return from_dict(cls, json.loads(text))
