"""Declarations of the IGDB resources mirrored into the local catalog."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, NamedTuple


class AssociationKey(NamedTuple):
    """How one association kind scopes a sync and where it is stored."""

    filter_field: str
    column: str


@dataclass(frozen=True)
class ResourceSpec:
    """Describe one IGDB endpoint and the shape of its local table.

    ``scalar_fields`` maps an upstream field to the python type it is
    stored as; ``list_fields`` hold arrays of ids and are serialized into a
    single text column; ``timestamp_fields`` are epoch seconds converted to
    datetimes.
    """

    name: str
    endpoint: str
    scalar_fields: Mapping[str, type] = field(default_factory=dict)
    list_fields: tuple[str, ...] = ()
    timestamp_fields: tuple[str, ...] = ()
    name_field: str | None = "name"
    where: str | None = None
    filter_field: str = "id"
    sort_field: str = "id"
    association_keys: Mapping[str, AssociationKey] = field(default_factory=dict)
    media_source: tuple[str, str] | None = None

    @property
    def table_name(self) -> str:
        return f"igdb_{self.name}"

    @property
    def fields(self) -> tuple[str, ...]:
        names = ["id"]
        if self.name_field:
            names.append(self.name_field)
        names.extend([*self.scalar_fields, *self.list_fields, *self.timestamp_fields])
        seen: set[str] = set()
        ordered: list[str] = []
        for name in names:
            if name in seen:
                continue
            seen.add(name)
            ordered.append(name)
        return tuple(ordered)

    @property
    def association_columns(self) -> tuple[str, ...]:
        columns: list[str] = []
        for key in self.association_keys.values():
            if key.column not in columns:
                columns.append(key.column)
        return tuple(columns)

    @property
    def data_columns(self) -> tuple[str, ...]:
        """Columns written from a draft, excluding the external id."""

        columns = [name for name in self.fields if name != "id"]
        columns.extend(self.association_columns)
        return tuple(columns)

    def association(self, kind: str) -> AssociationKey:
        try:
            return self.association_keys[kind]
        except KeyError:
            known = ", ".join(sorted(self.association_keys)) or "none"
            raise ValueError(
                f"{self.name} has no association kind {kind!r} (known: {known})"
            ) from None


_MEDIA_FIELDS: dict[str, type] = {
    "game": int,
    "height": int,
    "width": int,
    "image_id": str,
    "url": str,
}


RESOURCES: dict[str, ResourceSpec] = {
    spec.name: spec
    for spec in (
        ResourceSpec(
            name="platforms",
            endpoint="platforms",
            scalar_fields={
                "abbreviation": str,
                "alternative_name": str,
                "category": int,
                "checksum": str,
                "generation": int,
                "platform_family": int,
                "platform_logo": int,
                "platform_type": int,
                "slug": str,
                "summary": str,
                "url": str,
            },
            list_fields=("versions", "websites"),
            timestamp_fields=("created_at", "updated_at"),
            where="category = (1,5)",
        ),
        ResourceSpec(
            name="platform_versions",
            endpoint="platform_versions",
            scalar_fields={
                "checksum": str,
                "connectivity": str,
                "cpu": str,
                "graphics": str,
                "main_manufacturer": int,
                "media": str,
                "memory": str,
                "os": str,
                "output": str,
                "platform_logo": int,
                "resolutions": str,
                "slug": str,
                "sound": str,
                "storage": str,
                "summary": str,
                "url": str,
            },
            list_fields=("companies", "platform_version_release_dates"),
        ),
        ResourceSpec(
            name="platform_families",
            endpoint="platform_families",
            scalar_fields={"slug": str},
        ),
        ResourceSpec(name="companies", endpoint="companies"),
        ResourceSpec(name="genres", endpoint="genres", scalar_fields={"slug": str}),
        ResourceSpec(name="franchises", endpoint="franchises"),
        ResourceSpec(name="game_engines", endpoint="game_engines"),
        ResourceSpec(
            name="games",
            endpoint="games",
            scalar_fields={
                "rating": float,
                "storyline": str,
                "summary": str,
                "url": str,
                "cover": int,
                "franchise": int,
                "game_type": int,
            },
            list_fields=(
                "screenshots",
                "artworks",
                "involved_companies",
                "genres",
                "age_ratings",
                "alternative_names",
                "franchises",
                "game_engines",
                "multiplayer_modes",
                "platforms",
            ),
            filter_field="platforms",
            association_keys={
                "platform": AssociationKey("platforms", "platform_id"),
                "platform_version": AssociationKey("platforms", "platform_version_id"),
            },
        ),
        ResourceSpec(
            name="covers",
            endpoint="covers",
            name_field=None,
            scalar_fields=_MEDIA_FIELDS,
            media_source=("games", "cover"),
        ),
        ResourceSpec(
            name="screenshots",
            endpoint="screenshots",
            name_field=None,
            scalar_fields=_MEDIA_FIELDS,
            media_source=("games", "screenshots"),
        ),
        ResourceSpec(
            name="artworks",
            endpoint="artworks",
            name_field=None,
            scalar_fields={**_MEDIA_FIELDS, "artwork_type": int},
            media_source=("games", "artworks"),
        ),
    )
}


def get_resource(name: str) -> ResourceSpec:
    """Return the :class:`ResourceSpec` registered as ``name``."""

    key = str(name or "").strip().lower().replace("-", "_")
    try:
        return RESOURCES[key]
    except KeyError:
        raise ValueError(f"unknown IGDB resource: {name!r}") from None


__all__ = ["AssociationKey", "RESOURCES", "ResourceSpec", "get_resource"]
