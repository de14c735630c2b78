"""
Media Module
- Inline data URL / remote URL source handling
- Image crop and video frame extraction (see `transform`)
"""

from .sources import (
    SourceFetchError,
    decode_data_url,
    encode_data_url,
    fetch_bytes,
    is_data_url,
)
from .transform import MediaTransformError

__all__ = [
    "SourceFetchError",
    "decode_data_url",
    "encode_data_url",
    "fetch_bytes",
    "is_data_url",
    "MediaTransformError",
]
