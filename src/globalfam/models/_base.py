"""Base model for documents read from the external stores.

Every document model inherits from :class:`GlobalFamBaseModel` which
provides:

* ``alias_generator=to_camel`` so camelCase document keys map
  automatically to snake_case fields.
* A ``model_validator(mode="before")`` that drops ``None`` values and
  blank strings so the field default is used.
* Per-model ``_KEY_ALIASES`` for legacy field names written by older
  clients (``uid``, ``photoURL``, ``currentLocation``, ...).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from globalfam._normalize import parse_timestamp


def _parse_or_now(value: Any) -> datetime:
    parsed = parse_timestamp(value)
    return parsed if parsed is not None else datetime.now(UTC)


Timestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]
"""Optional timestamp; unparseable values become ``None``."""

RequiredTimestamp = Annotated[datetime, BeforeValidator(_parse_or_now)]
"""Timestamp that falls back to *now* when the document value is unusable.

Pending server timestamps are briefly written as ``null``; a freshly posted
status must still sort as the newest one.
"""


class GlobalFamBaseModel(BaseModel):
    """Base for document models."""

    _KEY_ALIASES: ClassVar[tuple[tuple[str, str], ...]] = ()
    """Ordered ``(legacy_key, canonical_key)`` pairs.

    A legacy key is only used when the canonical key is absent, so the
    first matching legacy key wins.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    @staticmethod
    def _clean_dict(values: dict[str, Any], aliases: tuple[tuple[str, str], ...] = ()) -> dict[str, Any]:
        """Apply key aliases and strip empty values from *values*."""
        working = dict(values)
        for old_key, new_key in aliases:
            if old_key in working and working.get(new_key) in (None, ""):
                working[new_key] = working.pop(old_key)

        cleaned: dict[str, Any] = {}
        for key, value in working.items():
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_document_values(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        aliases: tuple[tuple[str, str], ...] = getattr(cls, "_KEY_ALIASES", ())
        return GlobalFamBaseModel._clean_dict(values, aliases)
