# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
FLAC metadata codec

A FLAC stream starts with "fLaC" followed by a chain of metadata blocks.
Each block has a 4-byte header: bit 7 of the first byte flags the last
block, the low 7 bits give the block type, and the next 3 bytes hold the
payload length (big-endian). Audio frames follow the last block.

Metadata is stored in the Vorbis comment block (type 4):

    vendor length (4, LE) | vendor | count (4, LE) | {length (4, LE) | "key=value"}*

Copyright 2025 DNAi inc.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from wfexif.exceptions import (
    InvalidContainerError,
    MalformedEntryError,
    MetadataReadError,
    MetadataWriteError,
    WFExifError,
)
from wfexif.metadata_utils import decode_text, merge_records, validate_record

logger = logging.getLogger(__name__)

FLAC_SIGNATURE = b'fLaC'
BLOCK_HEADER_SIZE = 4
MAX_BLOCK_LENGTH = 0xFFFFFF

BLOCK_STREAMINFO = 0
BLOCK_PADDING = 1
BLOCK_VORBIS_COMMENT = 4

LAST_BLOCK_FLAG = 0x80

DEFAULT_VENDOR_STRING = 'WFExif Embedded Workflow Editor'


@dataclass
class FLACBlock:
    """Position of one metadata block inside a FLAC buffer."""
    type: int
    offset: int
    length: int
    is_last: bool = False

    @property
    def data_start(self) -> int:
        return self.offset + BLOCK_HEADER_SIZE

    @property
    def end(self) -> int:
        return self.data_start + self.length

    def payload(self, data: bytes) -> bytes:
        return data[self.data_start:self.end]


def iterate_blocks(data: bytes) -> Iterator[FLACBlock]:
    """
    Yield metadata blocks until the last-block flag or the end of data.

    A block whose length runs past the buffer is still yielded; its
    payload is whatever bytes remain.
    """
    offset = len(FLAC_SIGNATURE)
    while offset + BLOCK_HEADER_SIZE <= len(data):
        header = data[offset]
        block = FLACBlock(
            type=header & 0x7F,
            offset=offset,
            length=int.from_bytes(data[offset + 1:offset + 4], 'big'),
            is_last=bool(header & LAST_BLOCK_FLAG),
        )
        yield block
        if block.is_last:
            break
        offset = block.end


def build_block(block_type: int, payload: bytes, is_last: bool = False) -> bytes:
    """
    Build a metadata block.

    Raises:
        MetadataWriteError: If the payload does not fit the 24-bit length
    """
    if len(payload) > MAX_BLOCK_LENGTH:
        raise MetadataWriteError(
            f"FLAC metadata block too large: {len(payload)} bytes (max {MAX_BLOCK_LENGTH})"
        )
    header = (block_type & 0x7F) | (LAST_BLOCK_FLAG if is_last else 0)
    return bytes([header]) + len(payload).to_bytes(3, 'big') + payload


@dataclass
class VorbisComment:
    """Vendor string and ordered "key=value" comments of a Vorbis comment block."""
    vendor: str = DEFAULT_VENDOR_STRING
    comments: List[Tuple[str, str]] = field(default_factory=list)

    @classmethod
    def parse(cls, payload: bytes) -> 'VorbisComment':
        """
        Decode a Vorbis comment payload.

        Comments without '=' are logged and skipped. Bytes after the last
        comment (alignment padding) are ignored.

        Raises:
            MetadataReadError: If a length field runs past the payload
        """
        payload = bytes(payload)
        offset = 0

        def read_length() -> int:
            nonlocal offset
            if offset + 4 > len(payload):
                raise MetadataReadError("Truncated Vorbis comment block")
            value = struct.unpack('<I', payload[offset:offset + 4])[0]
            offset += 4
            return value

        def read_text(length: int) -> str:
            nonlocal offset
            if offset + length > len(payload):
                raise MetadataReadError("Vorbis comment string runs past end of block")
            text = decode_text(payload[offset:offset + length])
            offset += length
            return text

        vendor = read_text(read_length())
        count = read_length()

        comments: List[Tuple[str, str]] = []
        for _ in range(count):
            text = read_text(read_length())
            try:
                comments.append(cls.split_comment(text))
            except MalformedEntryError as exc:
                logger.warning("%s", exc)
        return cls(vendor=vendor, comments=comments)

    @classmethod
    def from_record(cls, record: Mapping[str, str], vendor: str = DEFAULT_VENDOR_STRING) -> 'VorbisComment':
        return cls(vendor=vendor, comments=list(record.items()))

    @staticmethod
    def split_comment(text: str) -> Tuple[str, str]:
        """
        Split a comment at the first '='.

        Raises:
            MalformedEntryError: If the comment has no '='
        """
        key, sep, value = text.partition('=')
        if not sep:
            raise MalformedEntryError(f"No '=' found in Vorbis comment: {text[:64]!r}")
        return key, value

    def to_record(self) -> Dict[str, str]:
        """Comments as a record; a repeated key keeps its last value."""
        return dict(self.comments)

    def encode(self) -> bytes:
        """Serialize to a Vorbis comment payload (no block header)."""
        vendor = self.vendor.encode('utf-8')
        blob = bytearray()
        blob.extend(struct.pack('<I', len(vendor)))
        blob.extend(vendor)
        blob.extend(struct.pack('<I', len(self.comments)))
        for key, value in self.comments:
            comment = f'{key}={value}'.encode('utf-8')
            blob.extend(struct.pack('<I', len(comment)))
            blob.extend(comment)
        return bytes(blob)


class FLACCodec:
    """
    Reads and writes metadata records in the Vorbis comment block of FLAC files.

    Both operations raise InvalidContainerError when the "fLaC" signature
    is missing.
    """

    def __init__(self, vendor_string: str = DEFAULT_VENDOR_STRING):
        """
        Initialize the codec.

        Args:
            vendor_string: Vendor written when the file has no Vorbis
                comment block yet (an existing vendor is always kept)
        """
        self.vendor_string = vendor_string

    @staticmethod
    def is_flac(data: bytes) -> bool:
        return data[:4] == FLAC_SIGNATURE

    def get(self, data: bytes) -> Dict[str, str]:
        """
        Read the metadata record from a FLAC buffer.

        Args:
            data: FLAC file data

        Returns:
            Comments of the first Vorbis comment block; empty if there is none

        Raises:
            InvalidContainerError: If the "fLaC" signature is missing
            MetadataReadError: If the Vorbis comment block is truncated
        """
        data = bytes(data)
        if not self.is_flac(data):
            raise InvalidContainerError("Not a valid FLAC file")

        for block in iterate_blocks(data):
            if block.type == BLOCK_VORBIS_COMMENT:
                return VorbisComment.parse(block.payload(data)).to_record()
        logger.debug("No Vorbis comment block found")
        return {}

    def set(self, data: bytes, fields: Mapping[str, str]) -> bytes:
        """
        Write a metadata record into a FLAC buffer.

        Every other metadata block is copied verbatim in its original
        order. The merged Vorbis comment is written as the last metadata
        block, followed by the original audio frames.

        Args:
            data: Original FLAC file data
            fields: Record to write

        Returns:
            New FLAC file data

        Raises:
            InvalidContainerError: If the "fLaC" signature is missing
            MetadataWriteError: If the new comment block cannot be built
        """
        data = bytes(data)
        if not self.is_flac(data):
            raise InvalidContainerError("Not a valid FLAC file")
        incoming = validate_record(fields)

        try:
            return self._write(data, incoming)
        except WFExifError:
            raise
        except Exception as exc:
            raise MetadataWriteError(f"Failed to write FLAC file: {exc}") from exc

    def _write(self, data: bytes, incoming: Dict[str, str]) -> bytes:
        parts: List[bytes] = [FLAC_SIGNATURE]
        comment_block: Optional[FLACBlock] = None
        # Without a last-block flag there are no audio frames to carry over
        audio_start = len(data)

        for block in iterate_blocks(data):
            if block.type == BLOCK_VORBIS_COMMENT:
                if comment_block is None:
                    comment_block = block
                else:
                    logger.warning("Dropping extra Vorbis comment block at offset %d", block.offset)
            else:
                raw = bytearray(data[block.offset:min(block.end, len(data))])
                raw[0] &= 0x7F
                parts.append(bytes(raw))
            if block.is_last:
                audio_start = min(block.end, len(data))

        comment = self._read_existing(data, comment_block)
        merged = merge_records(comment.to_record(), incoming)
        new_comment = VorbisComment.from_record(merged, vendor=comment.vendor)

        payload = new_comment.encode()
        if len(payload) % 2:
            payload += b'\x00'
        parts.append(build_block(BLOCK_VORBIS_COMMENT, payload, is_last=True))
        parts.append(data[audio_start:])

        logger.debug("Wrote Vorbis comment block with %d comments", len(merged))
        return b''.join(parts)

    def _read_existing(self, data: bytes, block: Optional[FLACBlock]) -> VorbisComment:
        if block is None:
            return VorbisComment(vendor=self.vendor_string)
        try:
            return VorbisComment.parse(block.payload(data))
        except MetadataReadError as exc:
            logger.warning("Replacing unreadable Vorbis comment block: %s", exc)
            return VorbisComment(vendor=self.vendor_string)


_default_codec = FLACCodec()


def get_flac_metadata(data: bytes) -> Dict[str, str]:
    """Read the metadata record of a FLAC buffer with default options."""
    return _default_codec.get(data)


def set_flac_metadata(data: bytes, fields: Mapping[str, str]) -> bytes:
    """Write a metadata record into a FLAC buffer with default options."""
    return _default_codec.set(data, fields)
