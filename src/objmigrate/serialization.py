"""
JSON serialization helpers.

Used for JSON columns in the SQL stores, changelog lines and progress
frames, all of which carry datetimes and enums.

Example:
    >>> from objmigrate.serialization import json_dumps, json_loads
    >>> json_loads(json_dumps({"status": RunStatus.RUNNING}))
    {'status': 'running'}
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Any
from uuid import UUID


class MigrationJSONEncoder(json.JSONEncoder):
    """
    JSON encoder that handles datetime, UUID, Enum and path objects.

    - datetime: ISO 8601 string
    - UUID, PurePath: string representation
    - Enum: its value
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, UUID | PurePath):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def json_dumps(obj: Any, **kwargs: Any) -> str:
    """Serialize ``obj`` with MigrationJSONEncoder."""
    return json.dumps(obj, cls=MigrationJSONEncoder, **kwargs)


def json_loads(value: str | bytes | Any) -> Any:
    """
    Deserialize a JSON document.

    Drivers that already decode JSON columns (asyncpg for JSONB when a codec
    is installed) hand back Python objects; those are returned unchanged.
    """
    if isinstance(value, str | bytes | bytearray):
        return json.loads(value)
    return value


__all__ = ["MigrationJSONEncoder", "json_dumps", "json_loads"]
