from dalcore.models.base import (
    Capability,
    EntityMixin,
    SoftDeletableMixin,
    TenantScopedMixin,
    capability_of,
)

__all__ = [
    "Capability",
    "EntityMixin",
    "SoftDeletableMixin",
    "TenantScopedMixin",
    "capability_of",
]
