"""Owner column mixin shared by windows, slots and calendar integrations."""

import uuid

from sqlalchemy import String, Uuid, and_
from sqlalchemy.orm import Mapped, mapped_column

from medbook.types import (
    OrganizationLocationOwner,
    OwnerRef,
    owner_from_columns,
)


class OwnerColumns:
    """
    Persisted form of the OwnerRef variant.

    A provider owner sets provider_id only; an organization owner sets
    organization_id and location_id.
    """

    owner_type: Mapped[str] = mapped_column(String(30), nullable=False)
    provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    location_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    @property
    def owner(self) -> OwnerRef:
        return owner_from_columns(
            self.owner_type, self.provider_id, self.organization_id, self.location_id
        )

    @classmethod
    def owned_by(cls, owner: OwnerRef, entity=None):
        """
        SQL criterion matching rows that belong to ``owner``.

        Pass ``entity`` to build the criterion against an aliased table.
        """
        target = entity if entity is not None else cls
        if isinstance(owner, OrganizationLocationOwner):
            return and_(
                target.owner_type == owner.kind.value,
                target.organization_id == owner.organization_id,
                target.location_id == owner.location_id,
            )
        return and_(
            target.owner_type == owner.kind.value,
            target.provider_id == owner.provider_id,
        )


OWNER_SHAPE_CHECK = (
    "(owner_type = 'provider' AND provider_id IS NOT NULL "
    "AND organization_id IS NULL AND location_id IS NULL) OR "
    "(owner_type = 'organization_location' AND provider_id IS NULL "
    "AND organization_id IS NOT NULL AND location_id IS NOT NULL)"
)
