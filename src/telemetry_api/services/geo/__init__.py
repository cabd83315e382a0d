"""IP geolocation services."""

from .errors import GeoDatabaseError, InvalidDatabaseError
from .lookup import GeoLookup, GeoResult, client_ip, is_public_ip
from .mmdb import Decoder, MMDBReader, Metadata

__all__ = [
    "Decoder",
    "GeoDatabaseError",
    "GeoLookup",
    "GeoResult",
    "InvalidDatabaseError",
    "MMDBReader",
    "Metadata",
    "client_ip",
    "is_public_ip",
]
