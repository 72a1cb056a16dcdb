"""
Helpers for reading and writing entity properties by dotted path.

Entities are pydantic models; nested relations are reached by following
attribute names separated by dots (``parent.organization.name``).
"""

from typing import Any, Dict, Optional, Union, get_args, get_origin
import types
import uuid

from pydantic import BaseModel


def is_zero_value(value: Any) -> bool:
    """
    True for values that carry no information for filtering or matching.

    None, empty strings, numeric zero, False, empty containers and models
    whose fields are all zero count as zero.
    """
    if value is None:
        return True
    if isinstance(value, BaseModel):
        return all(is_zero_value(getattr(value, name)) for name in type(value).model_fields)
    if isinstance(value, (str, bytes, list, tuple, dict, set, frozenset)):
        return len(value) == 0
    if isinstance(value, (bool, int, float)):
        return not value
    return False


def get_property(entity: Any, path: str) -> Any:
    """Read a dotted property path; any missing link yields None"""
    value = entity
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, dict):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


def to_key_string(value: Any) -> str:
    """String form of a value as it takes part in a composite lookup key"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, bytes) and len(value) == 16:
        return str(uuid.UUID(bytes=value))
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def property_string(entity: Any, path: str) -> str:
    return to_key_string(get_property(entity, path))


def model_type_of(annotation: Any) -> Optional[type]:
    """The pydantic model class inside an annotation such as Optional[Model]"""
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    origin = get_origin(annotation)
    if origin is Union or origin is getattr(types, "UnionType", None):
        for arg in get_args(annotation):
            found = model_type_of(arg)
            if found is not None:
                return found
    return None


def with_properties(entity: BaseModel, updates: Dict[str, Any]) -> BaseModel:
    """
    Return a copy of ``entity`` with each dotted path set to its value.

    The original entity and its nested models are left untouched. Missing
    intermediate models are created without validation.
    """
    if not updates:
        return entity

    direct: Dict[str, Any] = {}
    nested: Dict[str, Dict[str, Any]] = {}
    for path, value in updates.items():
        head, _, rest = path.partition(".")
        if rest:
            nested.setdefault(head, {})[rest] = value
        else:
            direct[head] = value

    for head, sub_updates in nested.items():
        current = getattr(entity, head, None)
        if current is None:
            field_info = type(entity).model_fields.get(head)
            model_type = model_type_of(field_info.annotation) if field_info else None
            if model_type is None:
                continue
            current = model_type.model_construct()
        direct[head] = with_properties(current, sub_updates)

    return entity.model_copy(update=direct)
