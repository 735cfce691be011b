"""Persistence for user and poll documents."""

from schej.storage.base import SchedulingStore
from schej.storage.memory import InMemoryStore
from schej.storage.postgres import PostgresStore

__all__ = ["InMemoryStore", "PostgresStore", "SchedulingStore"]
