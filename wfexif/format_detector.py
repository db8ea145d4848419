# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
File format detector

This module maps a file to one of the container formats that can carry
an embedded workflow, from its signature first and its extension second.

Copyright 2025 DNAi inc.
"""

from typing import Optional, Dict, Tuple
from pathlib import Path


class FormatDetector:
    """
    Detects container formats from file signatures and extensions.

    WEBP, MP4 and FLAC have codecs in this package. PNG and MP3 are
    recognized so callers get a precise "unsupported" answer instead of
    a wrong codec.
    """

    # Signature checks as (offset, magic) pairs; all must match
    FORMAT_SIGNATURES: Dict[str, Tuple[Tuple[int, bytes], ...]] = {
        'WEBP': ((0, b'RIFF'), (8, b'WEBP')),
        'MP4': ((4, b'ftyp'),),
        'FLAC': ((0, b'fLaC'),),
        'PNG': ((0, b'\x89PNG\r\n\x1a\n'),),
        'MP3': ((0, b'ID3'),),
    }

    # MPEG audio frame sync bytes (MP3 without an ID3 tag)
    MP3_FRAME_SYNC = (b'\xff\xfb', b'\xff\xf3', b'\xff\xf2')

    # Extension to format mapping
    EXTENSION_FORMATS: Dict[str, str] = {
        '.webp': 'WEBP',
        '.mp4': 'MP4', '.m4v': 'MP4', '.mov': 'MP4', '.m4a': 'MP4',
        '.flac': 'FLAC',
        '.png': 'PNG',
        '.mp3': 'MP3',
    }

    SUPPORTED_FORMATS = ('WEBP', 'MP4', 'FLAC')

    @classmethod
    def detect_format(cls, file_path: Optional[str] = None, file_data: Optional[bytes] = None) -> Optional[str]:
        """
        Detect file format from file data and/or path.

        Args:
            file_path: Path or file name (only its extension is used)
            file_data: File data (the first 12 bytes are enough)

        Returns:
            'WEBP', 'MP4', 'FLAC', 'PNG', 'MP3' or None if not detected
        """
        if file_data:
            format_name = cls.detect_signature(file_data)
            if format_name:
                return format_name

        if file_path:
            ext = Path(file_path).suffix.lower()
            if ext in cls.EXTENSION_FORMATS:
                return cls.EXTENSION_FORMATS[ext]

        return None

    @classmethod
    def detect_signature(cls, file_data: bytes) -> Optional[str]:
        """Return the format whose magic bytes match ``file_data``, if any."""
        for format_name, checks in cls.FORMAT_SIGNATURES.items():
            if all(file_data[offset:offset + len(magic)] == magic for offset, magic in checks):
                return format_name
        if file_data[:2] in cls.MP3_FRAME_SYNC:
            return 'MP3'
        return None

    @classmethod
    def is_supported_format(cls, format_name: str) -> bool:
        """
        Check if a codec exists for the format.

        Args:
            format_name: Format name

        Returns:
            True if metadata can be read and written
        """
        return format_name.upper() in cls.SUPPORTED_FORMATS
