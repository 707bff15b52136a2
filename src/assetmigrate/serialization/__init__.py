"""
Serialization utilities for assetmigrate.

Example:
    >>> from assetmigrate.serialization import json_dumps
    >>> json_dumps(checkpoint.to_dict())
"""

from assetmigrate.serialization.json import (
    MigrationJSONEncoder,
    json_dumps,
    json_loads,
)

__all__ = [
    "MigrationJSONEncoder",
    "json_dumps",
    "json_loads",
]
