"""Repository package exposing tenant-aware persistence for mapped entities."""

from __future__ import annotations

from dalcore.repositories.async_base import AsyncBaseRepository
from dalcore.repositories.base import BaseRepository, RepositoryContract, RepositoryCore
from dalcore.repositories.predicates import Filter, compose_filter

__all__ = [
    "AsyncBaseRepository",
    "BaseRepository",
    "Filter",
    "RepositoryContract",
    "RepositoryCore",
    "compose_filter",
]
