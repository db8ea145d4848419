# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
TIFF block structure utilities

This module decodes and encodes the single-IFD TIFF blocks embedded in
EXIF chunks. Only IFD0 is supported: the next-IFD pointer is written as 0
and never followed.

Value layout is sequential. Every value (inline-sized ones included) is
stored after the entry table in entry order, each starting on a word
boundary. The decoder predicts where each value should start under that
layout and compares the prediction with the stored offset. Producers are
known to write inconsistent offsets, so a mismatch is logged and the
predicted location is used as the fallback source for ASCII values.

Copyright 2025 DNAi inc.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from wfexif.exceptions import MetadataReadError, MetadataWriteError
from wfexif.exif_tags import TYPE_ASCII, tag_name
from wfexif.metadata_utils import decode_text

logger = logging.getLogger(__name__)

TIFF_MAGIC = 42
TIFF_HEADER_SIZE = 8
IFD_ENTRY_SIZE = 12


@dataclass
class IFDEntry:
    """
    One 12-byte IFD entry and its value bytes.

    For encoding only ``tag``, ``type`` and ``value`` matter; the other
    fields are filled in by the decoder.
    """
    tag: int
    type: int
    value: bytes
    count: int = 0
    offset: int = 0
    predict_offset: int = 0
    predict_value: bytes = b''
    ascii: Optional[str] = None

    @classmethod
    def from_text(cls, tag: int, text: str) -> 'IFDEntry':
        """Build a NUL-terminated ASCII entry holding ``text``."""
        value = text.encode('utf-8') + b'\x00'
        return cls(tag=tag, type=TYPE_ASCII, value=value, count=len(value))

    @property
    def offset_mismatch(self) -> bool:
        return self.offset != self.predict_offset


@dataclass
class TIFFBlock:
    """Decoded TIFF block: byte order, IFD0 entries and trailing pad size."""
    little_endian: bool
    ifd_offset: int
    entries: List[IFDEntry] = field(default_factory=list)
    tail_padding: int = 0

    @property
    def num_entries(self) -> int:
        return len(self.entries)


def _endian(little_endian: bool) -> str:
    return '<' if little_endian else '>'


def _decode_ascii(entry: IFDEntry) -> Optional[str]:
    """
    Decode an ASCII entry, preferring the stored offset.

    The trailing NUL is dropped. If the stored slice still contains a NUL
    (the stored offset points into the wrong place), the slice at the
    predicted offset is used instead. If both slices contain a NUL the
    value is treated as unreadable and None is returned.
    """
    text = decode_text(entry.value[:-1])
    if '\x00' not in text:
        return text or None

    text = decode_text(entry.predict_value[:-1])
    if '\x00' in text:
        logger.warning(
            "Skipping ASCII entry %s: no NUL-free value at offset %d or predicted offset %d",
            tag_name(entry.tag), entry.offset, entry.predict_offset
        )
        return None
    return text or None


def decode_tiff_block(block: bytes) -> TIFFBlock:
    """
    Decode a single-IFD TIFF block.

    Args:
        block: TIFF data starting with the "II"/"MM" byte-order mark

    Returns:
        TIFFBlock with byte order, IFD offset, entries and tail padding

    Raises:
        MetadataReadError: If the byte order is unknown or the entry table
            does not fit in the block
    """
    block = bytes(block)
    if len(block) < TIFF_HEADER_SIZE:
        raise MetadataReadError("Invalid TIFF block: too short")

    if block[:2] == b'II':
        little_endian = True
    elif block[:2] == b'MM':
        little_endian = False
    else:
        raise MetadataReadError(f"Invalid TIFF block: bad byte order {block[:2]!r}")
    endian = _endian(little_endian)

    ifd_offset = struct.unpack(f'{endian}I', block[4:8])[0]
    if ifd_offset + 2 > len(block):
        raise MetadataReadError(f"Invalid TIFF block: IFD offset {ifd_offset} past end of block")

    num_entries = struct.unpack(f'{endian}H', block[ifd_offset:ifd_offset + 2])[0]
    table_end = ifd_offset + 2 + num_entries * IFD_ENTRY_SIZE
    if table_end > len(block):
        raise MetadataReadError(
            f"Invalid TIFF block: {num_entries} entries do not fit in {len(block)} bytes"
        )

    entries: List[IFDEntry] = []
    # count (2) + entries + next IFD offset (4)
    predict_offset = table_end + 4
    for index in range(num_entries):
        if predict_offset % 2:
            predict_offset += 1  # word alignment

        entry_offset = ifd_offset + 2 + index * IFD_ENTRY_SIZE
        tag, tag_type, count, offset = struct.unpack(
            f'{endian}HHII', block[entry_offset:entry_offset + IFD_ENTRY_SIZE]
        )
        if offset != predict_offset:
            logger.warning(
                "TIFF entry %s: stored offset %d != predicted offset %d, block may be reordered or corrupted",
                tag_name(tag), offset, predict_offset
            )

        entry = IFDEntry(
            tag=tag,
            type=tag_type,
            value=block[offset:offset + count],
            count=count,
            offset=offset,
            predict_offset=predict_offset,
            predict_value=block[predict_offset:predict_offset + count],
        )
        if tag_type == TYPE_ASCII:
            entry.ascii = _decode_ascii(entry)
        else:
            # count is taken as a byte length and the value is always read at
            # the stored offset; values packed inline in the offset field are
            # not recognised and get laid out of line on re-encode
            logger.debug(
                "TIFF entry %s: type %d value read out of line (%d bytes at %d)",
                tag_name(tag), tag_type, count, offset
            )
        entries.append(entry)
        predict_offset += count

    tail_padding = len(block) - predict_offset
    if tail_padding < 0:
        logger.warning("TIFF values run %d bytes past the end of the block", -tail_padding)
        tail_padding = 0

    return TIFFBlock(
        little_endian=little_endian,
        ifd_offset=ifd_offset,
        entries=entries,
        tail_padding=tail_padding,
    )


def encode_tiff_block(
    entries: Sequence[IFDEntry],
    tail_padding: int = 0,
    little_endian: bool = True
) -> bytes:
    """
    Encode entries into a single-IFD TIFF block.

    Layout is header, entry table, then values in entry order. A zero
    byte is inserted before any value that would start at an odd offset,
    and ``tail_padding`` zero bytes are appended so chunk-length accounting
    matches the decoded original.

    Args:
        entries: Entries to write; each entry's count is its value length
        tail_padding: Number of trailing zero bytes
        little_endian: Write "II" (True) or "MM" (False) byte order

    Returns:
        Encoded TIFF block
    """
    if tail_padding < 0:
        raise MetadataWriteError(f"Invalid TIFF tail padding: {tail_padding}")

    endian = _endian(little_endian)
    header = (b'II' if little_endian else b'MM') + struct.pack(f'{endian}HI', TIFF_MAGIC, TIFF_HEADER_SIZE)

    ifd_size = 2 + len(entries) * IFD_ENTRY_SIZE + 4
    value_offset = len(header) + ifd_size

    table = bytearray(struct.pack(f'{endian}H', len(entries)))
    values = bytearray()
    for entry in entries:
        if value_offset % 2:
            values.append(0)
            value_offset += 1
        table.extend(struct.pack(f'{endian}HHII', entry.tag, entry.type, len(entry.value), value_offset))
        values.extend(entry.value)
        value_offset += len(entry.value)

    # Single IFD: no next IFD
    table.extend(struct.pack(f'{endian}I', 0))

    return bytes(header + table + values + bytes(tail_padding))
