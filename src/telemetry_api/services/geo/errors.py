"""Errors raised by the local geolocation database."""

from __future__ import annotations


class GeoDatabaseError(Exception):
    """The local database cannot serve lookups (missing, unreadable)."""


class InvalidDatabaseError(GeoDatabaseError):
    """The database file is structurally inconsistent."""


__all__ = ["GeoDatabaseError", "InvalidDatabaseError"]
