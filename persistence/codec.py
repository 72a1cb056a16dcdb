"""
Value codecs applied between entities and stored columns.

- JSONB columns are marshalled to JSON text just before a statement is
  built and unmarshalled into the field's declared type on read.
- Encrypted columns are encrypted then base64 encoded on write, and base64
  decoded then decrypted on read.
- Other columns are converted into the field's declared type when
  possible, otherwise kept as returned by the driver.
"""

from functools import lru_cache
from typing import Any, Optional
import base64
import binascii
import uuid

from pydantic import BaseModel, TypeAdapter, ValidationError

from core.crypto import FieldCipher
from core.exceptions import DecryptionError, SerializationError


@lru_cache(maxsize=None)
def _adapter(target_type: Any) -> TypeAdapter:
    return TypeAdapter(target_type)


def marshal(value: Any) -> Optional[str]:
    """Serialize a JSONB value to JSON text; None and '' pass through"""
    if value is None or value == "":
        return value
    try:
        if isinstance(value, BaseModel):
            return value.model_dump_json()
        return _adapter(type(value)).dump_json(value).decode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(
            "JSONB value could not be serialized",
            context={"value_type": type(value).__name__},
            original_exception=e
        )


def unmarshal(raw: Any, target_type: Any) -> Any:
    """Decode a stored JSONB value into ``target_type``"""
    adapter = _adapter(target_type if target_type is not None else Any)
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            return adapter.validate_json(raw)
        return adapter.validate_python(raw)
    except ValidationError as e:
        raise SerializationError(
            "JSONB value could not be decoded",
            context={"target_type": repr(target_type)},
            original_exception=e
        )


def convert(value: Any, target_type: Any) -> Any:
    """
    Convert a driver value into the field's declared type.

    Raw 16 byte values are UUIDs and are rendered to their canonical
    string. Values that do not convert are returned unchanged.
    """
    if isinstance(value, (bytes, bytearray)) and len(value) == 16:
        value = str(uuid.UUID(bytes=bytes(value)))
    if value is None or target_type is None:
        return value
    if isinstance(value, uuid.UUID):
        # UUID columns map onto string fields
        try:
            return _adapter(target_type).validate_python(str(value))
        except ValidationError:
            return value
    try:
        return _adapter(target_type).validate_python(value)
    except ValidationError:
        return value


def encrypt_value(cipher: Optional[FieldCipher], value: Any, column_name: str) -> Any:
    """Encrypt a column value and base64 encode it; empty values are stored as-is"""
    if value is None or value == "":
        return value
    if isinstance(value, str):
        plaintext = value.encode("utf-8")
    elif isinstance(value, (bytes, bytearray)):
        plaintext = bytes(value)
    else:
        raise SerializationError(
            "can only encrypt values that can be converted to bytes",
            context={"column_name": column_name, "value_type": type(value).__name__}
        )
    if cipher is None:
        raise DecryptionError(
            "no encryption key configured for encrypted column",
            context={"column_name": column_name}
        )
    return base64.b64encode(cipher.encrypt(plaintext)).decode("ascii")


def decrypt_value(cipher: Optional[FieldCipher], raw: Any, column_name: str, target_type: Any = str) -> Any:
    """Base64 decode and decrypt a stored value; empty values decode to None"""
    if raw is None or raw == "" or raw == b"":
        return None
    if not isinstance(raw, str):
        raise DecryptionError(
            "can only decrypt values which are stored as base64 strings",
            context={"column_name": column_name}
        )
    try:
        sealed = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(
            "base64 decoding of value failed",
            context={"column_name": column_name},
            original_exception=e
        )
    if cipher is None:
        raise DecryptionError(
            "no encryption key configured for encrypted column",
            context={"column_name": column_name}
        )
    plaintext = cipher.decrypt(sealed)
    if target_type is bytes:
        return plaintext
    return plaintext.decode("utf-8")
