# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
WFExif - Embedded Workflow Metadata Editor

Reads and rewrites the small metadata record (a JSON "workflow" string plus
free-form text fields) that generation tools embed in WEBP, MP4 and FLAC
files, without touching the media payload.

Each container has a codec with the same two operations:

    get(buffer) -> record
    set(buffer, record) -> new buffer

Copyright 2025 DNAi inc.
"""

__version__ = "0.1.0"
__author__ = "DNAi inc."

from wfexif.core import WFExif, read_metadata, write_metadata
from wfexif.exceptions import (
    WFExifError,
    MetadataReadError,
    MetadataWriteError,
    InvalidContainerError,
    BoxNotFoundError,
    MalformedEntryError,
    UnsupportedFormatError,
)
from wfexif.flac_codec import FLACCodec, VorbisComment, get_flac_metadata, set_flac_metadata
from wfexif.metadata_utils import WORKFLOW_KEY, merge_records
from wfexif.mp4_codec import MP4Codec, get_mp4_metadata, set_mp4_metadata
from wfexif.tiff_structure import decode_tiff_block, encode_tiff_block
from wfexif.webp_codec import WebPCodec, get_webp_metadata, set_webp_metadata

__all__ = [
    "WFExif",
    "read_metadata",
    "write_metadata",
    "WFExifError",
    "MetadataReadError",
    "MetadataWriteError",
    "InvalidContainerError",
    "BoxNotFoundError",
    "MalformedEntryError",
    "UnsupportedFormatError",
    "WebPCodec",
    "MP4Codec",
    "FLACCodec",
    "VorbisComment",
    "get_webp_metadata",
    "set_webp_metadata",
    "get_mp4_metadata",
    "set_mp4_metadata",
    "get_flac_metadata",
    "set_flac_metadata",
    "decode_tiff_block",
    "encode_tiff_block",
    "merge_records",
    "WORKFLOW_KEY",
]
