"""Derive the owning obituary reference from an image key.

Image files are named after the obituary they belong to, e.g. ``AB123456_1.jpg``
belongs to ``AB123456``. The reference is always the fixed-width prefix of the
file name; whether an obituary with that reference exists is for the caller
to check.
"""

from typing import Any, Optional

from obitarchive.core.config import settings


def resolve_owner(asset_key: Any, width: Optional[int] = None) -> Optional[str]:
    """Return the candidate owner reference for ``asset_key``.

    Only the part after the last ``/`` is considered, so keys under a prefix
    resolve the same way as top-level keys.

    Args:
        asset_key: Object key
        width: Reference width (defaults to REFERENCE_LENGTH)

    Returns:
        The first ``width`` characters of the file name, or None when the key
        is not a string or its file name is shorter than ``width``
    """
    if width is None:
        width = settings.REFERENCE_LENGTH
    if not isinstance(asset_key, str) or width < 1:
        return None
    name = asset_key.rsplit("/", 1)[-1]
    if len(name) < width:
        return None
    return name[:width]
