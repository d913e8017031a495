"""Map raw IGDB payloads onto the column layout of the local catalog."""

from __future__ import annotations

import numbers
from dataclasses import dataclass, field
from typing import Any, Mapping

from catalog_sync.resources import ResourceSpec
from helpers import coerce_igdb_id, epoch_to_datetime, serialize_ids


class _Unset:
    """Marker for optional fields absent from the upstream payload."""

    _instance: "_Unset | None" = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@dataclass
class LocalRecordDraft:
    """Storage-ready values for one upstream record.

    ``values`` holds every data column of the resource; absent optional
    fields carry :data:`UNSET`. ``association`` is a ``(column, value)``
    pair supplied by the caller, never derived from the payload.
    """

    resource: str
    external_id: int
    values: dict[str, Any] = field(default_factory=dict)
    association: tuple[str, Any] | None = None

    def is_unset(self, column: str) -> bool:
        return self.values.get(column, UNSET) is UNSET

    def to_row(self) -> dict[str, Any]:
        row = {
            column: (None if value is UNSET else value)
            for column, value in self.values.items()
        }
        if self.association is not None:
            column, value = self.association
            row[column] = value
        return row


class RecordTransformer:
    """Build :class:`LocalRecordDraft` objects for one resource."""

    def __init__(self, spec: ResourceSpec) -> None:
        self._spec = spec

    @property
    def spec(self) -> ResourceSpec:
        return self._spec

    def transform(
        self,
        record: Mapping[str, Any],
        association: tuple[str, Any] | None = None,
    ) -> LocalRecordDraft:
        if not isinstance(record, Mapping):
            raise TypeError(f"expected a mapping, got {type(record).__name__}")

        external_id = coerce_igdb_id(record.get("id"))
        if external_id is None:
            raise ValueError(f"record has no usable IGDB id: {record.get('id')!r}")

        spec = self._spec
        values: dict[str, Any] = {}

        if spec.name_field:
            name = record.get(spec.name_field)
            if name is None:
                raise ValueError(f"{spec.name} {external_id} is missing {spec.name_field!r}")
            values[spec.name_field] = name

        for column, kind in spec.scalar_fields.items():
            values[column] = _coerce_scalar(record.get(column, UNSET), kind, column)

        for column in spec.list_fields:
            raw = record.get(column)
            if raw is None:
                values[column] = UNSET
                continue
            if not isinstance(raw, (list, tuple)):
                raw = [raw]
            values[column] = serialize_ids(_id_of(item, column) for item in raw)

        for column in spec.timestamp_fields:
            raw = record.get(column)
            converted = epoch_to_datetime(raw) if raw is not None else None
            values[column] = UNSET if converted is None else converted

        if association is not None:
            column, _value = association
            if column not in spec.association_columns:
                raise ValueError(f"{spec.name} has no association column {column!r}")

        return LocalRecordDraft(
            resource=spec.name,
            external_id=external_id,
            values=values,
            association=association,
        )


def _coerce_scalar(value: Any, kind: type, column: str) -> Any:
    if value is UNSET or value is None:
        return UNSET
    if kind is int:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, numbers.Integral):
            return int(value)
        coerced = coerce_igdb_id(value)
        if coerced is None:
            raise ValueError(f"{column} is not an integer: {value!r}")
        return coerced
    if kind is float:
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{column} is not a number: {value!r}") from None
    if isinstance(value, (Mapping, list, tuple)):
        raise ValueError(f"{column} is not a scalar: {value!r}")
    return value if isinstance(value, str) else str(value)


def _id_of(item: Any, column: str) -> int:
    if isinstance(item, Mapping):
        item = item.get("id")
    coerced = coerce_igdb_id(item)
    if coerced is None:
        raise ValueError(f"{column} contains a non-integer id: {item!r}")
    return coerced


__all__ = ["LocalRecordDraft", "RecordTransformer", "UNSET"]
