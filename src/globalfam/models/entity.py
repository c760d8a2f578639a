"""Aggregated per-friend state and the snapshots published to consumers."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from globalfam.models.geo import GeoPlace
from globalfam.models.profile import ProfileRecord
from globalfam.models.status import StatusRecord


class ProfileState(StrEnum):
    PENDING = "pending"


PENDING = ProfileState.PENDING
"""Placeholder profile between learning an id and its first profile delivery."""


class AggregatedEntity(BaseModel):
    """Merged profile and latest status of one tracked friend.

    ``profile`` is :data:`PENDING` until the first profile delivery and
    ``None`` when the profile does not exist or its feed failed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    profile: ProfileRecord | ProfileState | None = PENDING
    status: StatusRecord | None = None

    @property
    def is_pending(self) -> bool:
        return self.profile is PENDING

    @property
    def record(self) -> ProfileRecord | None:
        return self.profile if isinstance(self.profile, ProfileRecord) else None

    @property
    def display_name(self) -> str:
        if self.is_pending:
            return "Loading..."
        record = self.record
        return record.display_name if record is not None else "Unknown Name"

    @property
    def is_online(self) -> bool:
        record = self.record
        return record.is_online if record is not None else False

    @property
    def location(self) -> GeoPlace | None:
        record = self.record
        return record.location if record is not None else None


def _display_key(entity: AggregatedEntity) -> tuple[bool, bool, str, str]:
    return (entity.is_pending, not entity.is_online, entity.display_name.casefold(), entity.id)


class EntitySnapshot(Mapping[str, AggregatedEntity]):
    """Immutable ordered mapping of entity id to :class:`AggregatedEntity`.

    Iteration follows insertion order, which is stable within a session.
    """

    __slots__ = ("_entities", "_version")

    def __init__(
        self,
        entities: Mapping[str, AggregatedEntity] | Iterable[tuple[str, AggregatedEntity]] = (),
        *,
        version: int = 0,
    ) -> None:
        self._entities: dict[str, AggregatedEntity] = dict(entities)
        self._version = version

    @property
    def version(self) -> int:
        """Emission counter of the aggregator that produced the snapshot."""
        return self._version

    def __getitem__(self, key: str) -> AggregatedEntity:
        return self._entities[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entities)

    def __len__(self) -> int:
        return len(self._entities)

    def __repr__(self) -> str:
        return f"EntitySnapshot(version={self._version}, ids={list(self._entities)!r})"

    def pending_ids(self) -> list[str]:
        return [entity_id for entity_id, entity in self._entities.items() if entity.is_pending]

    def located_places(self) -> list[tuple[str, GeoPlace]]:
        """``(id, place)`` for every entity whose profile carries a location."""
        places: list[tuple[str, GeoPlace]] = []
        for entity_id, entity in self._entities.items():
            place = entity.location
            if place is not None:
                places.append((entity_id, place))
        return places

    def ordered_for_display(self) -> list[AggregatedEntity]:
        """Online first, then by name; pending rows go last."""
        return sorted(self._entities.values(), key=_display_key)
