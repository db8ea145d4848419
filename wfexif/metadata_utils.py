# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
Metadata utility functions shared by the container codecs.

This module holds the record merge policy used by every codec on write,
plus the text helpers that turn raw metadata bytes into strings.

Copyright 2025 DNAi inc.
"""

import logging
from typing import Dict, Mapping, Optional

import chardet

from wfexif.exceptions import MetadataWriteError

logger = logging.getLogger(__name__)

# Reserved key holding the workflow JSON document (stored as an opaque string)
WORKFLOW_KEY = 'workflow'


def merge_records(
    existing: Mapping[str, str],
    incoming: Mapping[str, str]
) -> Dict[str, str]:
    """
    Merge an incoming record over the record already stored in a file.

    Keys present in both take the incoming value; every other key from
    either side is kept. Existing keys keep their position, new keys are
    appended in the incoming order. Neither argument is modified.

    Args:
        existing: Record decoded from the container
        incoming: Record supplied by the caller

    Returns:
        New merged record

    Example:
        >>> merge_records({'a': '1', 'b': '2'}, {'b': '3', 'c': '4'})
        {'a': '1', 'b': '3', 'c': '4'}
    """
    merged: Dict[str, str] = dict(existing)
    merged.update(incoming)
    return merged


def validate_record(fields: Mapping[str, str]) -> Dict[str, str]:
    """
    Return a plain-dict copy of a record, rejecting non-string keys or values.

    Empty keys are rejected too; no container can store them.

    Raises:
        MetadataWriteError: If a key or value is not a string, or a key is empty
    """
    record: Dict[str, str] = {}
    for key, value in fields.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise MetadataWriteError(
                f"Metadata keys and values must be strings, got {type(key).__name__}:{type(value).__name__}"
            )
        if not key:
            raise MetadataWriteError("Metadata keys must not be empty")
        record[key] = value
    return record


def decode_text(raw: bytes, fallback: str = 'latin-1') -> str:
    """
    Decode a metadata text payload.

    UTF-8 is tried first. Payloads that are not valid UTF-8 (older
    producers sometimes write Latin-1 or Shift-JIS) are decoded with the
    encoding chardet detects, then with ``fallback``.

    Args:
        raw: Raw bytes of the value
        fallback: Encoding used when detection gives no usable answer

    Returns:
        Decoded string
    """
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError:
        pass

    encoding: Optional[str] = None
    detected = chardet.detect(raw)
    if detected:
        encoding = detected.get('encoding')
    if encoding:
        try:
            text = raw.decode(encoding)
            logger.debug("Decoded non-UTF-8 text as %s", encoding)
            return text
        except (UnicodeDecodeError, LookupError):
            pass
    return raw.decode(fallback, errors='replace')


def strip_nul(text: str) -> str:
    """Drop NUL terminators some writers leave around a text payload."""
    return text.strip('\x00')
