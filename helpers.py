"""General-purpose helper utilities shared across the application."""

from __future__ import annotations

import json
import numbers
from datetime import datetime, timezone
from typing import Any, Iterable

import pandas as pd


__all__ = [
    "_chunked",
    "_is_missing",
    "coerce_igdb_id",
    "deserialize_ids",
    "epoch_to_datetime",
    "serialize_ids",
]


def _is_missing(value: Any) -> bool:
    """Return ``True`` for ``None``, NaN-like values and the literal ``"nan"``."""

    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() == "nan"
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def coerce_igdb_id(value: Any) -> int | None:
    """Normalize potential IGDB identifiers to an ``int``."""

    if isinstance(value, bool) or _is_missing(value):
        return None
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real):
        return int(value) if float(value).is_integer() else None
    text = str(value).strip()
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    try:
        return int(text)
    except (TypeError, ValueError):
        return None


def serialize_ids(values: Iterable[Any]) -> str:
    """Encode a list of IGDB ids as compact JSON text.

    Order and duplicates are preserved so that :func:`deserialize_ids`
    returns exactly the list that was encoded.
    """

    return json.dumps([int(value) for value in values], separators=(",", ":"))


def deserialize_ids(raw_value: Any) -> list[int]:
    if raw_value in (None, ""):
        return []
    if isinstance(raw_value, (list, tuple)):
        value = list(raw_value)
    else:
        text = str(raw_value).strip()
        if not text:
            return []
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            value = [segment.strip() for segment in text.strip("[]").split(",") if segment.strip()]
    if not isinstance(value, list):
        value = [value]
    result: list[int] = []
    for item in value:
        coerced = coerce_igdb_id(item)
        if coerced is not None:
            result.append(coerced)
    return result


def epoch_to_datetime(value: Any) -> datetime | None:
    if value in (None, "", 0):
        return None
    try:
        timestamp = float(value)
    except (TypeError, ValueError):
        return None
    if timestamp <= 0:
        return None
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _chunked(values: list[Any], size: int) -> Iterable[list[Any]]:
    step = max(int(size), 1)
    for start in range(0, len(values), step):
        yield values[start : start + step]
