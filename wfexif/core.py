# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
Core WFExif API

This module picks the container codec for a buffer or file and exposes
the WFExif class, a file-level interface for reading and writing the
embedded metadata record.

Copyright 2025 DNAi inc.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union

from wfexif.exceptions import MetadataWriteError, UnsupportedFormatError
from wfexif.flac_codec import DEFAULT_VENDOR_STRING, FLACCodec
from wfexif.format_detector import FormatDetector
from wfexif.metadata_utils import WORKFLOW_KEY, merge_records
from wfexif.mp4_codec import MP4Codec
from wfexif.webp_codec import WebPCodec

logger = logging.getLogger(__name__)

# Codec class and the constructor options it accepts, per format
CODECS: Dict[str, Tuple[Type, Tuple[str, ...]]] = {
    'WEBP': (WebPCodec, ('little_endian', 'update_vp8x_flags')),
    'MP4': (MP4Codec, ('write_legacy_box', 'update_chunk_offsets')),
    'FLAC': (FLACCodec, ('vendor_string',)),
}

CODEC_OPTIONS = frozenset(name for _, names in CODECS.values() for name in names)


def create_codec(format_name: str, **options: Any):
    """
    Create the codec for a format.

    Options that belong to other formats' codecs are ignored, so one set
    of options can be passed for any file.

    Args:
        format_name: 'WEBP', 'MP4' or 'FLAC'
        **options: Codec constructor options

    Returns:
        Codec instance with ``get`` and ``set`` methods

    Raises:
        UnsupportedFormatError: If no codec handles the format
        ValueError: If an option is not known to any codec
    """
    unknown = set(options) - CODEC_OPTIONS
    if unknown:
        raise ValueError(f"Unknown codec option(s): {', '.join(sorted(unknown))}")

    format_name = format_name.upper()
    if format_name not in CODECS:
        raise UnsupportedFormatError(f"No metadata codec for format: {format_name}")
    codec_class, accepted = CODECS[format_name]
    return codec_class(**{name: value for name, value in options.items() if name in accepted})


def resolve_format(data: bytes, format_name: Optional[str] = None, file_name: Optional[str] = None) -> str:
    """
    Return the format to use for ``data``.

    An explicit ``format_name`` wins; otherwise the signature is checked,
    then the extension of ``file_name``.

    Raises:
        UnsupportedFormatError: If the format is unknown or has no codec
    """
    if format_name is None:
        format_name = FormatDetector.detect_format(file_path=file_name, file_data=data[:16])
    if format_name is None:
        raise UnsupportedFormatError(f"Cannot determine file format of {file_name or 'buffer'}")
    if not FormatDetector.is_supported_format(format_name):
        raise UnsupportedFormatError(
            f"Unsupported file format: {format_name}. "
            f"Supported formats: {', '.join(FormatDetector.SUPPORTED_FORMATS)}"
        )
    return format_name.upper()


def read_metadata(
    data: bytes,
    format_name: Optional[str] = None,
    file_name: Optional[str] = None
) -> Dict[str, str]:
    """
    Read the metadata record of a container buffer.

    Args:
        data: File data
        format_name: Force a format instead of detecting it
        file_name: File name used for extension-based detection

    Returns:
        Metadata record
    """
    data = bytes(data)
    format_name = resolve_format(data, format_name, file_name)
    return create_codec(format_name).get(data)


def write_metadata(
    data: bytes,
    fields: Mapping[str, str],
    format_name: Optional[str] = None,
    file_name: Optional[str] = None,
    **options: Any
) -> bytes:
    """
    Write a metadata record into a container buffer.

    Args:
        data: Original file data
        fields: Record to merge over the stored one
        format_name: Force a format instead of detecting it
        file_name: File name used for extension-based detection
        **options: Codec options (see CODECS)

    Returns:
        New file data
    """
    data = bytes(data)
    format_name = resolve_format(data, format_name, file_name)
    return create_codec(format_name, **options).set(data, fields)


class WFExif:
    """
    Reads and writes the metadata record embedded in a media file.

    Example:
        >>> with WFExif('render.webp') as wf:
        ...     workflow = wf.get_workflow()
        ...     wf.set_workflow('{"nodes": []}')
        ...     wf.save()
    """

    # Facade option name -> codec constructor option
    OPTION_KEYWORDS: Dict[str, str] = {
        'VendorString': 'vendor_string',
        'WriteLegacyWorkflowBox': 'write_legacy_box',
        'UpdateChunkOffsets': 'update_chunk_offsets',
        'UpdateVP8XFlags': 'update_vp8x_flags',
    }

    def __init__(self, file_path: Union[str, Path], read_only: bool = False):
        """
        Open a media file and read its metadata record.

        Args:
            file_path: Path to a WEBP, MP4 or FLAC file
            read_only: If True, set_tag() and save() raise

        Raises:
            FileNotFoundError: If the file does not exist
            UnsupportedFormatError: If the file format has no codec
        """
        self.file_path = Path(file_path)
        if not self.file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        self.read_only = read_only
        self._data = self.file_path.read_bytes()
        self.format_name = resolve_format(self._data, file_name=self.file_path.name)

        self.options: Dict[str, Any] = {}
        self._initialize_default_options()

        self.metadata: Dict[str, str] = {}
        self.modified_tags: Dict[str, str] = {}
        self._load_metadata()

    def _initialize_default_options(self) -> None:
        for option_name, option_info in self.available_options().items():
            self.options[option_name] = option_info['default']

    def _load_metadata(self) -> None:
        self.metadata = create_codec(self.format_name).get(self._data)
        logger.debug("Read %d metadata keys from %s", len(self.metadata), self.file_path)

    @staticmethod
    def available_options() -> Dict[str, Dict[str, Any]]:
        """
        Return a dictionary of available options.

        Returns:
            Dictionary mapping option names to their description, type
            ('bool' or 'str') and default value
        """
        return {
            'VendorString': {
                'description': 'Vendor string of a Vorbis comment block created in a FLAC file',
                'type': 'str',
                'default': DEFAULT_VENDOR_STRING,
            },
            'WriteLegacyWorkflowBox': {
                'description': "Also write the workflow to the legacy 'wflo' box in MP4 files",
                'type': 'bool',
                'default': True,
            },
            'UpdateChunkOffsets': {
                'description': 'Shift MP4 stco/co64 chunk offsets when moov changes size before mdat',
                'type': 'bool',
                'default': True,
            },
            'UpdateVP8XFlags': {
                'description': 'Set the VP8X EXIF flag when an EXIF chunk is added to a WebP file',
                'type': 'bool',
                'default': True,
            },
        }

    def set_option(self, option_name: str, value: Any) -> None:
        """
        Set an option value.

        Args:
            option_name: Name of the option (e.g., 'VendorString')
            value: Value to set; 'true'/'false' strings are accepted for bools

        Raises:
            ValueError: If the option name is not recognized
        """
        available = self.available_options()
        if option_name not in available:
            raise ValueError(f"Unknown option: {option_name}. Use available_options() to see valid options.")

        expected_type = available[option_name]['type']
        if expected_type == 'bool' and not isinstance(value, bool):
            if isinstance(value, str):
                value = value.lower() in ('true', '1', 'yes', 'on')
            else:
                value = bool(value)
        elif expected_type == 'str' and not isinstance(value, str):
            raise ValueError(f"Option {option_name} requires str value, got {type(value).__name__}")

        self.options[option_name] = value

    def get_option(self, option_name: str, default: Any = None) -> Any:
        return self.options.get(option_name, default)

    def get_all_metadata(self) -> Dict[str, str]:
        """Return the stored record with pending changes applied."""
        return merge_records(self.metadata, self.modified_tags)

    def get_tag(self, tag_name: str, default: Optional[str] = None) -> Optional[str]:
        """
        Get a metadata value.

        Args:
            tag_name: Record key (e.g., 'workflow', 'prompt')
            default: Value returned when the key is absent

        Returns:
            Pending value if set, else the stored value, else ``default``
        """
        if tag_name in self.modified_tags:
            return self.modified_tags[tag_name]
        return self.metadata.get(tag_name, default)

    def get_workflow(self) -> Optional[str]:
        return self.get_tag(WORKFLOW_KEY)

    def set_tag(self, tag_name: str, value: str) -> None:
        """
        Set a metadata value. The change is applied when save() is called.

        Raises:
            MetadataWriteError: If in read-only mode, or the name or value
                is not a usable string
        """
        if self.read_only:
            raise MetadataWriteError(
                f"Cannot set tag '{tag_name}': File '{self.file_path}' is opened in read-only mode. "
                "Open the file without read_only=True to enable writing."
            )
        if not isinstance(tag_name, str) or not tag_name:
            raise MetadataWriteError(f"Invalid tag name: {tag_name!r}")
        if not isinstance(value, str):
            raise MetadataWriteError(
                f"Value of '{tag_name}' must be a string, got {type(value).__name__}"
            )
        self.modified_tags[tag_name] = value

    def set_tags(self, tags: Mapping[str, str]) -> None:
        for tag_name, value in tags.items():
            self.set_tag(tag_name, value)

    def set_workflow(self, workflow: str) -> None:
        self.set_tag(WORKFLOW_KEY, workflow)

    def _codec_options(self) -> Dict[str, Any]:
        return {
            keyword: self.options[option_name]
            for option_name, keyword in self.OPTION_KEYWORDS.items()
        }

    def save(self, output_path: Optional[Union[str, Path]] = None) -> None:
        """
        Save metadata changes.

        Args:
            output_path: Optional output path. If None, saves to the
                original file.

        Raises:
            MetadataWriteError: If in read-only mode or the file cannot be
                rebuilt
        """
        if self.read_only:
            raise MetadataWriteError(
                f"Cannot save changes: File '{self.file_path}' is opened in read-only mode. "
                "Open the file without read_only=True to enable writing."
            )

        if not self.modified_tags:
            return  # No changes to save

        output = Path(output_path) if output_path else self.file_path
        new_data = create_codec(self.format_name, **self._codec_options()).set(self._data, self.modified_tags)
        output.write_bytes(new_data)
        logger.info("Wrote %d metadata keys to %s", len(self.modified_tags), output)

        if output.resolve() == self.file_path.resolve():
            self._data = new_data
            self.modified_tags = {}
            self._load_metadata()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        # Changes are only written by an explicit save()
        pass

    def __repr__(self) -> str:
        """String representation."""
        return f"WFExif(file_path='{self.file_path}', format={self.format_name}, tags={len(self.metadata)})"
