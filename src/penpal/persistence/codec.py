"""Dataclass <-> JSON-compatible record conversion.

Used by the store snapshot. Handles nested dataclasses, str enums,
timezone-aware datetimes, lists, dicts and Optional fields, which is
everything the pen-pal models are made of.
"""

from __future__ import annotations

import dataclasses
import enum
import typing
from datetime import datetime
from typing import Any, Union


def encode(value: Any) -> Any:
    """Convert a model value into JSON-compatible primitives."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: encode(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set, frozenset)):
        return [encode(v) for v in value]
    if isinstance(value, dict):
        return {str(k): encode(v) for k, v in value.items()}
    return value


def decode(tp: Any, value: Any) -> Any:
    """Rebuild a value of type ``tp`` from its encoded form."""
    if value is None:
        return None
    origin = typing.get_origin(tp)
    if origin is Union:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        return decode(args[0], value) if args else value
    if origin in (list, tuple):
        args = typing.get_args(tp)
        item_type = args[0] if args else Any
        items = [decode(item_type, v) for v in value]
        return tuple(items) if origin is tuple else items
    if origin is dict:
        _, val_type = typing.get_args(tp) or (str, Any)
        return {k: decode(val_type, v) for k, v in value.items()}
    if tp is Any:
        return value
    if isinstance(tp, type) and issubclass(tp, enum.Enum):
        return tp(value)
    if tp is datetime:
        return datetime.fromisoformat(value)
    if isinstance(tp, type) and dataclasses.is_dataclass(tp):
        hints = typing.get_type_hints(tp)
        kwargs = {
            f.name: decode(hints[f.name], value[f.name])
            for f in dataclasses.fields(tp)
            if f.init and f.name in value
        }
        return tp(**kwargs)
    return value
