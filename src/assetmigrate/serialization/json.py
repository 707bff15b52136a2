"""
JSON serialization utilities for assetmigrate types.

Checkpoints, run rows and change-log payloads are stored as JSON text in
SQLite and files. This module handles the values that the standard encoder
does not: datetimes, enums, paths and tuples of those.

Example:
    >>> from assetmigrate.serialization import json_dumps, json_loads
    >>> json_str = json_dumps({"phase": RunPhase.TRANSFER, "at": utc_now()})
    >>> json_loads(json_str)["phase"]
    'transfer'
"""

import json
from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Any
from uuid import UUID


class MigrationJSONEncoder(json.JSONEncoder):
    """
    JSON encoder that handles datetime, Enum, UUID and path objects.

    - datetime: ISO 8601 string
    - Enum: its value
    - UUID, PurePath: string representation
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, UUID | PurePath):
            return str(obj)
        return super().default(obj)


def json_dumps(obj: Any, *, indent: int | None = None) -> str:
    """
    Serialize ``obj`` using MigrationJSONEncoder.

    Keys are sorted so that equal objects produce byte-identical output.
    """
    return json.dumps(obj, cls=MigrationJSONEncoder, sort_keys=True, indent=indent)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize a JSON document.

    Datetimes and enums are returned as strings; the models' ``from_dict``
    constructors convert them back.
    """
    return json.loads(s)


__all__ = [
    "MigrationJSONEncoder",
    "json_dumps",
    "json_loads",
]
