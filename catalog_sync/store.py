"""SQLAlchemy-backed persistence for synced IGDB records."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Protocol

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    Table,
    Text,
    func,
    select,
)
from sqlalchemy.engine import Engine

from catalog_sync.resources import RESOURCES, ResourceSpec, get_resource
from catalog_sync.transform import LocalRecordDraft
from db.utils import DatabaseEngine, db_lock
from helpers import _chunked, coerce_igdb_id, deserialize_ids

logger = logging.getLogger(__name__)


_COLUMN_TYPES = {int: BigInteger, float: Float, str: Text}


class CatalogStore(Protocol):
    """Persistence operations the sync engine relies on."""

    def find_by_external_id(self, resource: str, external_id: int) -> Mapping[str, Any] | None:
        ...

    def insert(self, resource: str, draft: LocalRecordDraft) -> Mapping[str, Any]:
        ...

    def update(self, resource: str, local_id: int, draft: LocalRecordDraft) -> Mapping[str, Any]:
        ...

    def count_by_association(self, resource: str, association_id: Any) -> int:
        ...


def build_table(spec: ResourceSpec, metadata: MetaData) -> Table:
    """Return the :class:`Table` mirroring ``spec`` on ``metadata``."""

    columns: list[Column] = [
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("igdb_id", BigInteger, nullable=False, unique=True),
    ]
    if spec.name_field:
        columns.append(Column(spec.name_field, Text, nullable=False))
    for name, kind in spec.scalar_fields.items():
        if name == spec.name_field:
            continue
        columns.append(Column(name, _COLUMN_TYPES.get(kind, Text), nullable=True))
    for name in spec.list_fields:
        columns.append(Column(name, Text, nullable=True))
    for name in spec.timestamp_fields:
        columns.append(Column(name, DateTime(timezone=True), nullable=True))
    for name in spec.association_columns:
        columns.append(Column(name, BigInteger, nullable=True, index=True))
    columns.append(Column("last_synced", DateTime(timezone=True), nullable=True))
    return Table(spec.table_name, metadata, *columns)


class SqlCatalogStore:
    """Store drafts in one table per resource, keyed by unique ``igdb_id``."""

    def __init__(
        self,
        database: DatabaseEngine | Engine,
        resources: Iterable[ResourceSpec] | None = None,
        *,
        clock: Any = None,
    ) -> None:
        self._engine = database.engine if isinstance(database, DatabaseEngine) else database
        self._metadata = MetaData()
        self._specs: dict[str, ResourceSpec] = {}
        self._tables: dict[str, Table] = {}
        for spec in resources if resources is not None else RESOURCES.values():
            self._specs[spec.name] = spec
            self._tables[spec.name] = build_table(spec, self._metadata)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def engine(self) -> Engine:
        return self._engine

    def ensure_tables(self) -> None:
        """Create any missing resource tables."""

        self._metadata.create_all(self._engine)
        logger.info("Ensured %d catalog tables", len(self._tables))

    def spec(self, resource: str | ResourceSpec) -> ResourceSpec:
        name = resource.name if isinstance(resource, ResourceSpec) else get_resource(resource).name
        try:
            return self._specs[name]
        except KeyError:
            raise ValueError(f"resource {name!r} is not managed by this store") from None

    def table(self, resource: str | ResourceSpec) -> Table:
        return self._tables[self.spec(resource).name]

    def find_by_external_id(
        self, resource: str | ResourceSpec, external_id: int
    ) -> dict[str, Any] | None:
        table = self.table(resource)
        with db_lock, self._engine.connect() as conn:
            row = conn.execute(
                select(table).where(table.c.igdb_id == int(external_id))
            ).mappings().first()
        return dict(row) if row is not None else None

    def insert(self, resource: str | ResourceSpec, draft: LocalRecordDraft) -> dict[str, Any]:
        table = self.table(resource)
        values = self._row_values(table, draft)
        values["igdb_id"] = int(draft.external_id)
        with db_lock, self._engine.begin() as conn:
            result = conn.execute(table.insert().values(**values))
            local_id = result.inserted_primary_key[0]
            row = conn.execute(select(table).where(table.c.id == local_id)).mappings().one()
        return dict(row)

    def update(
        self, resource: str | ResourceSpec, local_id: int, draft: LocalRecordDraft
    ) -> dict[str, Any]:
        table = self.table(resource)
        values = self._row_values(table, draft)
        with db_lock, self._engine.begin() as conn:
            result = conn.execute(table.update().where(table.c.id == local_id).values(**values))
            if result.rowcount == 0:
                raise LookupError(f"{table.name} row {local_id} does not exist")
            row = conn.execute(select(table).where(table.c.id == local_id)).mappings().one()
        return dict(row)

    def count(self, resource: str | ResourceSpec) -> int:
        table = self.table(resource)
        with db_lock, self._engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(table)).scalar_one())

    def count_by_association(
        self,
        resource: str | ResourceSpec,
        association_id: Any,
        *,
        association_kind: str | None = None,
    ) -> int:
        """Count rows linked to ``association_id``.

        Without ``association_kind`` the first association column of the
        resource is used.
        """

        spec = self.spec(resource)
        if association_kind is not None:
            column_name = spec.association(association_kind).column
        elif spec.association_columns:
            column_name = spec.association_columns[0]
        else:
            raise ValueError(f"{spec.name} has no association column")
        table = self._tables[spec.name]
        with db_lock, self._engine.connect() as conn:
            return int(
                conn.execute(
                    select(func.count())
                    .select_from(table)
                    .where(table.c[column_name] == association_id)
                ).scalar_one()
            )

    def existing_external_ids(
        self, resource: str | ResourceSpec, external_ids: Iterable[int]
    ) -> set[int]:
        table = self.table(resource)
        wanted = sorted({int(value) for value in external_ids})
        found: set[int] = set()
        with db_lock, self._engine.connect() as conn:
            # Keep the IN list below SQLite's bound parameter limit.
            for chunk in _chunked(wanted, 500):
                found.update(
                    conn.execute(select(table.c.igdb_id).where(table.c.igdb_id.in_(chunk))).scalars()
                )
        return found

    def collect_media_ids(
        self,
        resource: str | ResourceSpec,
        *,
        association: tuple[str, Any] | None = None,
    ) -> list[int]:
        """Return media ids referenced by stored source rows, in first-seen order.

        ``association`` is an optional ``(column, value)`` pair that restricts
        the scan to source rows linked to one association.
        """

        spec = self.spec(resource)
        if spec.media_source is None:
            raise ValueError(f"{spec.name} is not a media resource")
        source_name, source_column = spec.media_source
        source = self.table(source_name)
        query = select(source.c[source_column]).where(source.c[source_column].is_not(None))
        if association is not None:
            column, value = association
            query = query.where(source.c[column] == value)

        seen: set[int] = set()
        ordered: list[int] = []
        with db_lock, self._engine.connect() as conn:
            for raw in conn.execute(query.order_by(source.c.igdb_id)).scalars():
                scalar = coerce_igdb_id(raw)
                ids = [scalar] if scalar is not None else deserialize_ids(raw)
                for media_id in ids:
                    if media_id not in seen:
                        seen.add(media_id)
                        ordered.append(media_id)
        return ordered

    def _row_values(self, table: Table, draft: LocalRecordDraft) -> dict[str, Any]:
        values = {
            column: value
            for column, value in draft.to_row().items()
            if column in table.c
        }
        values["last_synced"] = self._clock()
        return values


__all__ = ["CatalogStore", "SqlCatalogStore", "build_table"]
