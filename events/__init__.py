"""
Events - Schéma canonique, résolution des timestamps et normalisation
"""
from events.normalizer import normalize_event
from events.schema import get_event_schema, get_supported_event_types, validate
from events.timestamps import resolve_timestamp

__all__ = [
    "normalize_event",
    "validate",
    "get_supported_event_types",
    "get_event_schema",
    "resolve_timestamp",
]
