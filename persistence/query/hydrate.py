"""
Hydrator: rebuilds typed entities from flat, aliased result rows.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel

from core.crypto import FieldCipher
from models.table_metadata import FieldMetadata, TableMetadata
from persistence.codec import convert, decrypt_value, unmarshal
from persistence.query.table import FieldDescriptor


def map_rows_to_aliases(
    rows: Sequence[Mapping[str, Any]], field_aliases: Dict[str, FieldDescriptor]
) -> List[Dict[str, Dict[str, Any]]]:
    """Group each row's values by alias: ``[{"t0": {"id": ..}, "t1": {..}}, ..]``"""
    grouped = []
    for row in rows:
        by_alias: Dict[str, Dict[str, Any]] = {}
        for label, value in row.items():
            descriptor = field_aliases.get(label)
            if descriptor is None:
                continue
            by_alias.setdefault(descriptor.alias, {})[descriptor.column_name] = value
        grouped.append(by_alias)
    return grouped


def decode_value(field: FieldMetadata, raw: Any, cipher: Optional[FieldCipher] = None) -> Any:
    if field.is_encrypted:
        plaintext = decrypt_value(cipher, raw, field.column_name, bytes if field.value_type is bytes else str)
        return convert(plaintext, field.value_type)
    if field.is_jsonb:
        if raw is None:
            return None
        return unmarshal(raw, field.value_type)
    return convert(raw, field.value_type)


class Hydrator:
    """Builds one entity per result row, nesting joined relations by their path from the root"""

    def __init__(self, field_aliases: Dict[str, FieldDescriptor], cipher: Optional[FieldCipher] = None):
        self.field_aliases = field_aliases
        self.cipher = cipher
        self.path_aliases = {d.ref_path: d.alias for d in field_aliases.values()}

    def hydrate(self, rows: Sequence[Mapping[str, Any]], metadata: TableMetadata) -> List[BaseModel]:
        root_alias = self.path_aliases.get("")
        return [
            self._build(metadata, by_alias, root_alias, "")
            for by_alias in map_rows_to_aliases(rows, self.field_aliases)
        ]

    def _build(self, metadata: TableMetadata, by_alias: Dict[str, Dict[str, Any]], alias: str, ref_path: str) -> BaseModel:
        values = by_alias.get(alias, {})
        data: Dict[str, Any] = {}
        for field in metadata.fields:
            if field.column_name in values:
                data[field.name] = decode_value(field, values[field.column_name], self.cipher)

        for foreign_key in metadata.foreign_keys:
            path = f"{ref_path}.{foreign_key.related_field_name}" if ref_path else foreign_key.related_field_name
            related_alias = self.path_aliases.get(path)
            if related_alias is None:
                # Relation not selected; leave it unset
                continue
            related_values = by_alias.get(related_alias, {})
            if all(value is None for value in related_values.values()):
                data[foreign_key.related_field_name] = None
                continue
            data[foreign_key.related_field_name] = self._build(
                foreign_key.table_metadata, by_alias, related_alias, path
            )

        return metadata.entity_type.model_construct(**data)


def hydrate(
    rows: Sequence[Mapping[str, Any]],
    metadata: TableMetadata,
    field_aliases: Dict[str, FieldDescriptor],
    cipher: Optional[FieldCipher] = None,
) -> List[BaseModel]:
    return Hydrator(field_aliases, cipher).hydrate(rows, metadata)
