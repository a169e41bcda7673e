"""Concrete persistence and identity collaborators."""

from .memory import InMemoryIdentityStore, InMemoryPaymentRepository
from .sql import SqlPaymentRepository

__all__ = ["InMemoryIdentityStore", "InMemoryPaymentRepository", "SqlPaymentRepository"]
