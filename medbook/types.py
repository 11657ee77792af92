"""Shared tagged variants used across the scheduling core."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import TypeAlias

from medbook.db.enums import OwnerType, RecurrenceKind


# =============================================================================
# Owner
# =============================================================================

@dataclass(frozen=True)
class ProviderOwner:
    """An individual provider publishing their own availability."""

    provider_id: uuid.UUID

    kind = OwnerType.PROVIDER

    def __str__(self) -> str:
        return f"provider:{self.provider_id}"


@dataclass(frozen=True)
class OrganizationLocationOwner:
    """An organization publishing availability for one of its locations."""

    organization_id: uuid.UUID
    location_id: uuid.UUID

    kind = OwnerType.ORGANIZATION_LOCATION

    def __str__(self) -> str:
        return f"organization:{self.organization_id}/location:{self.location_id}"


OwnerRef: TypeAlias = ProviderOwner | OrganizationLocationOwner


def owner_from_columns(
    owner_type: str,
    provider_id: uuid.UUID | None,
    organization_id: uuid.UUID | None,
    location_id: uuid.UUID | None,
) -> OwnerRef:
    """Rebuild an OwnerRef from its persisted column representation."""
    if owner_type == OwnerType.PROVIDER.value:
        if provider_id is None:
            raise ValueError("provider owner requires provider_id")
        return ProviderOwner(provider_id=provider_id)
    if owner_type == OwnerType.ORGANIZATION_LOCATION.value:
        if organization_id is None or location_id is None:
            raise ValueError("organization owner requires organization_id and location_id")
        return OrganizationLocationOwner(
            organization_id=organization_id, location_id=location_id
        )
    raise ValueError(f"Unknown owner type: {owner_type}")


def owner_columns(owner: OwnerRef) -> dict[str, object]:
    """Column values for persisting an OwnerRef."""
    if isinstance(owner, ProviderOwner):
        return {
            "owner_type": OwnerType.PROVIDER.value,
            "provider_id": owner.provider_id,
            "organization_id": None,
            "location_id": None,
        }
    return {
        "owner_type": OwnerType.ORGANIZATION_LOCATION.value,
        "provider_id": None,
        "organization_id": owner.organization_id,
        "location_id": owner.location_id,
    }


# =============================================================================
# Recurrence
# =============================================================================

@dataclass(frozen=True)
class NoRecurrence:
    kind = RecurrenceKind.NONE


@dataclass(frozen=True)
class DailyRecurrence:
    until: date | None = None

    kind = RecurrenceKind.DAILY


@dataclass(frozen=True)
class WeeklyRecurrence:
    """Repeats on the given weekdays (Monday=0, Sunday=6)."""

    days: tuple[int, ...]
    until: date | None = None

    kind = RecurrenceKind.WEEKLY


@dataclass(frozen=True)
class CustomRecurrence:
    """Arbitrary weekday set with an optional series end."""

    days: tuple[int, ...]
    until: date | None = None

    kind = RecurrenceKind.CUSTOM


Recurrence: TypeAlias = NoRecurrence | DailyRecurrence | WeeklyRecurrence | CustomRecurrence


def recurrence_from_columns(
    kind: str, days: list[int] | None, until: date | None
) -> Recurrence:
    if kind == RecurrenceKind.NONE.value:
        return NoRecurrence()
    if kind == RecurrenceKind.DAILY.value:
        return DailyRecurrence(until=until)
    if kind == RecurrenceKind.WEEKLY.value:
        return WeeklyRecurrence(days=tuple(days or ()), until=until)
    if kind == RecurrenceKind.CUSTOM.value:
        return CustomRecurrence(days=tuple(days or ()), until=until)
    raise ValueError(f"Unknown recurrence kind: {kind}")


def recurrence_columns(recurrence: Recurrence) -> dict[str, object]:
    days = getattr(recurrence, "days", None)
    return {
        "recurrence_kind": recurrence.kind.value,
        "recurrence_days": sorted(set(days)) if days else None,
        "recurrence_until": getattr(recurrence, "until", None),
    }
