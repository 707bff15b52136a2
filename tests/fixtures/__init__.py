"""
Shared test data for the assetmigrate tests.

Usage:
    from tests.fixtures import build_assets, asset_path, asset_content
"""

from tests.fixtures.assets import (
    asset_content,
    asset_path,
    build_assets,
    record_id,
)

__all__ = [
    "build_assets",
    "asset_path",
    "asset_content",
    "record_id",
]
