"""Shared utilities for WellPulse services."""
from .pii import hash_pii, hash_many, configure_pii_salt

__all__ = ["hash_pii", "hash_many", "configure_pii_salt"]
