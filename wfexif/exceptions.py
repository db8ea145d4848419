# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
Exception classes for WFExif

This module defines custom exceptions for the WFExif library.
Container-level failures on write are fatal; entry-level failures
(MalformedEntryError) are caught by the codecs, logged and skipped.

Copyright 2025 DNAi inc.
"""


class WFExifError(Exception):
    """
    Base exception for all WFExif errors.

    All WFExif exceptions inherit from this class, allowing
    catch-all error handling for any WFExif-related errors.
    """
    def __init__(self, message: str = ""):
        """
        Initialize the exception with an optional error message.

        Args:
            message: Descriptive error message explaining what went wrong
        """
        self.message = message
        super().__init__(message)


class MetadataReadError(WFExifError):
    """
    Raised when a metadata structure cannot be decoded.

    This exception is raised when:
    - A TIFF block has an unknown byte order or is truncated
    - An IFD entry table extends past the end of its block
    """
    pass


class MetadataWriteError(WFExifError):
    """
    Raised when metadata cannot be serialized into a container.

    This exception is raised when:
    - A record value is not a string
    - A rebuilt block no longer fits its length field
    - An unexpected failure occurs while reassembling a container
    """
    pass


class InvalidContainerError(WFExifError):
    """
    Raised when a buffer does not carry the magic signature of its container
    (RIFF/WEBP, a leading MP4 'ftyp' box, or 'fLaC').
    """
    pass


class BoxNotFoundError(WFExifError):
    """
    Raised when a structural MP4 box required for writing (such as 'moov')
    is absent.
    """
    pass


class MalformedEntryError(WFExifError):
    """
    Raised for a single unreadable metadata entry.

    Non-fatal: codecs catch it, log a warning and skip the entry. Examples
    are an EXIF ASCII value without a colon, a truncated MP4 'ilst' item
    or a Vorbis comment without '='.
    """
    pass


class UnsupportedFormatError(WFExifError):
    """
    Raised when the file format is not supported.

    This exception is raised when:
    - File signature and extension do not match any known format
    - The format is recognized (PNG, MP3) but has no codec in this package
    """
    pass
