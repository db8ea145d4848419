# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
WebP metadata codec

WebP uses the RIFF container: a 12-byte "RIFF<size>WEBP" header followed
by chunks of {type(4), length(4, little-endian), payload} padded to an even
length. Workflow metadata lives in the EXIF chunk as IFD0 ASCII entries of
the form "key:value". All other chunks are copied byte for byte.

Copyright 2025 DNAi inc.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, Optional, Set, Tuple

from wfexif.exceptions import (
    InvalidContainerError,
    MalformedEntryError,
    MetadataReadError,
    MetadataWriteError,
    WFExifError,
)
from wfexif.exif_tags import allocate_tags
from wfexif.metadata_utils import validate_record
from wfexif.tiff_structure import IFDEntry, TIFFBlock, decode_tiff_block, encode_tiff_block

logger = logging.getLogger(__name__)

RIFF_HEADER_SIZE = 12
CHUNK_HEADER_SIZE = 8


@dataclass
class RIFFChunk:
    """Position of one RIFF chunk inside a buffer."""
    type: bytes
    offset: int
    length: int

    @property
    def data_start(self) -> int:
        return self.offset + CHUNK_HEADER_SIZE

    @property
    def data_end(self) -> int:
        return self.data_start + self.length

    @property
    def end(self) -> int:
        # Chunks are padded to even sizes
        return self.data_end + (self.length % 2)

    def payload(self, data: bytes) -> bytes:
        return data[self.data_start:self.data_end]


def iterate_chunks(data: bytes, start: int = RIFF_HEADER_SIZE) -> Iterator[RIFFChunk]:
    """
    Yield chunks of a RIFF container.

    Stops when fewer than 8 bytes remain. A final chunk whose declared
    length runs past the buffer is still yielded; callers slice what is
    there.
    """
    offset = start
    length = len(data)
    while offset + CHUNK_HEADER_SIZE <= length:
        chunk_type = data[offset:offset + 4]
        chunk_size = struct.unpack('<I', data[offset + 4:offset + 8])[0]
        chunk = RIFFChunk(type=chunk_type, offset=offset, length=chunk_size)
        yield chunk
        offset = chunk.end


def split_entry(text: str) -> Tuple[str, str]:
    """
    Split an EXIF ASCII value into key and value at the first colon.

    Raises:
        MalformedEntryError: If the value has no colon
    """
    index = text.find(':')
    if index == -1:
        raise MalformedEntryError(f"No colon found in EXIF value: {text[:64]!r}")
    return text[:index], text[index + 1:]


def build_chunk(chunk_type: bytes, chunk_data: bytes) -> bytes:
    """
    Write a RIFF chunk.

    Args:
        chunk_type: Chunk type (4 bytes)
        chunk_data: Chunk payload

    Returns:
        Complete chunk bytes (type + size + data + pad byte if odd)
    """
    chunk = bytearray()
    chunk.extend(chunk_type)
    chunk.extend(struct.pack('<I', len(chunk_data)))
    chunk.extend(chunk_data)
    if len(chunk_data) % 2 == 1:
        chunk.append(0)
    return bytes(chunk)


class WebPCodec:
    """
    Reads and writes "key:value" metadata in the EXIF chunk of WebP files.

    Reading never raises: a buffer that is not a WebP file, or that cannot
    be walked, yields an empty record. Writing raises InvalidContainerError
    when the RIFF/WEBP signature is missing.
    """

    CHUNK_EXIF = b'EXIF'
    CHUNK_XMP = b'XMP '
    CHUNK_VP8X = b'VP8X'

    EXIF_HEADER = b'Exif\x00\x00'

    # VP8X feature flag bits
    FLAG_EXIF = 0x08

    def __init__(self, little_endian: bool = True, update_vp8x_flags: bool = True):
        """
        Initialize the codec.

        Args:
            little_endian: Byte order of TIFF blocks created from scratch
            update_vp8x_flags: Set the VP8X EXIF bit when an EXIF chunk
                is created in an extended-format file
        """
        self.little_endian = little_endian
        self.update_vp8x_flags = update_vp8x_flags

    @staticmethod
    def is_webp(data: bytes) -> bool:
        return len(data) >= RIFF_HEADER_SIZE and data[:4] == b'RIFF' and data[8:12] == b'WEBP'

    def get(self, data: bytes) -> Dict[str, str]:
        """
        Read the metadata record from a WebP buffer.

        Args:
            data: WebP file data

        Returns:
            Record of key/value strings; empty on any structural failure
        """
        try:
            data = bytes(data)
            if not self.is_webp(data):
                raise InvalidContainerError("Not a valid WEBP file")
            return self._read(data)
        except Exception as exc:
            logger.error("Failed to read WebP metadata: %s", exc)
            return {}

    def _read(self, data: bytes) -> Dict[str, str]:
        record: Dict[str, str] = {}
        for chunk in iterate_chunks(data):
            if chunk.type != self.CHUNK_EXIF:
                continue
            _, tiff_data = self._split_exif_header(chunk.payload(data))
            try:
                block = decode_tiff_block(tiff_data)
            except MetadataReadError as exc:
                logger.warning("Skipping undecodable EXIF chunk at offset %d: %s", chunk.offset, exc)
                continue
            for entry in block.entries:
                if not entry.ascii:
                    continue
                try:
                    key, value = split_entry(entry.ascii)
                except MalformedEntryError as exc:
                    logger.warning("%s", exc)
                    continue
                record[key] = value
        return record

    def set(self, data: bytes, fields: Mapping[str, str]) -> bytes:
        """
        Write a metadata record into a WebP buffer.

        Existing entries keep their tags; their values are replaced when
        the record has the same key. Keys that match no entry are appended
        as new ASCII entries, or written to a new EXIF chunk when the file
        has none.

        Args:
            data: Original WebP file data
            fields: Record to write

        Returns:
            New WebP file data

        Raises:
            InvalidContainerError: If the RIFF/WEBP signature is missing
            MetadataWriteError: If the file cannot be rebuilt
        """
        data = bytes(data)
        if not self.is_webp(data):
            raise InvalidContainerError("Not a valid WEBP file")
        incoming = validate_record(fields)

        try:
            return self._write(data, incoming)
        except WFExifError:
            raise
        except Exception as exc:
            raise MetadataWriteError(f"Failed to write WebP file: {exc}") from exc

    def _write(self, data: bytes, incoming: Dict[str, str]) -> bytes:
        decoded = self._decode_exif_chunks(data)
        existing_keys: Set[str] = set()
        for _, block in decoded.values():
            existing_keys.update(key for _, key in self._keyed_entries(block))
        # Keys no EXIF chunk holds yet; appended to the first decodable one
        missing = {key: value for key, value in incoming.items() if key not in existing_keys}

        parts: List[bytes] = [data[:RIFF_HEADER_SIZE]]
        consumed = RIFF_HEADER_SIZE
        exif_seen = False
        exif_rewritten = False
        landed: Set[str] = set()
        vp8x_index: Optional[int] = None
        xmp_index: Optional[int] = None

        for chunk in iterate_chunks(data):
            raw = data[chunk.offset:chunk.end]
            if chunk.type == self.CHUNK_EXIF:
                exif_seen = True
                if chunk.offset in decoded:
                    exif_header, block = decoded[chunk.offset]
                    append = {} if exif_rewritten else missing
                    raw = self._rewrite_exif_chunk(exif_header, block, incoming, append, landed)
                    exif_rewritten = True
            elif chunk.type == self.CHUNK_VP8X and vp8x_index is None:
                vp8x_index = len(parts)
            elif chunk.type == self.CHUNK_XMP and xmp_index is None:
                xmp_index = len(parts)
            parts.append(raw)
            consumed = min(chunk.end, len(data))

        pending = {key: value for key, value in incoming.items() if key not in landed}
        if pending and exif_seen:
            logger.warning(
                "Found EXIF chunk but failed to modify it; keys not written: %s",
                ', '.join(pending)
            )
        elif pending:
            exif_chunk = self._build_exif_chunk(pending)
            # EXIF precedes XMP in the extended format chunk order
            insert_at = xmp_index if xmp_index is not None else len(parts)
            parts.insert(insert_at, exif_chunk)
            if vp8x_index is not None and self.update_vp8x_flags:
                parts[vp8x_index] = self._with_exif_flag(parts[vp8x_index])

        if consumed < len(data):
            # Trailing bytes too short for a chunk header
            parts.append(data[consumed:])

        webp_data = bytearray(b''.join(parts))
        webp_data[4:8] = struct.pack('<I', len(webp_data) - 8)
        return bytes(webp_data)

    def _decode_exif_chunks(self, data: bytes) -> Dict[int, Tuple[bytes, TIFFBlock]]:
        """
        Decode every EXIF chunk, keyed by chunk offset.

        Undecodable chunks are logged and left out; the writer keeps them
        verbatim.
        """
        decoded: Dict[int, Tuple[bytes, TIFFBlock]] = {}
        for chunk in iterate_chunks(data):
            if chunk.type != self.CHUNK_EXIF:
                continue
            exif_header, tiff_data = self._split_exif_header(chunk.payload(data))
            try:
                decoded[chunk.offset] = (exif_header, decode_tiff_block(tiff_data))
            except MetadataReadError as exc:
                logger.warning("Keeping undecodable EXIF chunk at offset %d unchanged: %s", chunk.offset, exc)
        return decoded

    @staticmethod
    def _keyed_entries(block: TIFFBlock) -> Iterator[Tuple[IFDEntry, str]]:
        """Yield (entry, key) for every ASCII entry holding a "key:value" string."""
        for entry in block.entries:
            if not entry.ascii:
                continue
            try:
                key, _ = split_entry(entry.ascii)
            except MalformedEntryError:
                continue
            yield entry, key

    def _rewrite_exif_chunk(
        self,
        exif_header: bytes,
        block: TIFFBlock,
        incoming: Dict[str, str],
        append: Dict[str, str],
        landed: Set[str]
    ) -> bytes:
        """
        Rebuild one EXIF chunk.

        Entries whose key is in ``incoming`` get the new value; all other
        entries keep their original bytes. ``append`` holds keys to add as
        new entries. Every key written is added to ``landed``.
        """
        for entry, key in self._keyed_entries(block):
            if key in incoming:
                entry.value = f'{key}:{incoming[key]}\x00'.encode('utf-8')
                landed.add(key)

        if append:
            tags = allocate_tags(entry.tag for entry in block.entries)
            for (key, value), tag in zip(append.items(), tags):
                block.entries.append(IFDEntry.from_text(tag, f'{key}:{value}'))
                landed.add(key)

        tiff_block = encode_tiff_block(
            block.entries,
            tail_padding=block.tail_padding,
            little_endian=block.little_endian,
        )
        return build_chunk(self.CHUNK_EXIF, exif_header + tiff_block)

    def _build_exif_chunk(self, record: Dict[str, str]) -> bytes:
        """Create an EXIF chunk holding only ``record``."""
        entries = [
            IFDEntry.from_text(tag, f'{key}:{value}')
            for (key, value), tag in zip(record.items(), allocate_tags(()))
        ]
        tiff_block = encode_tiff_block(entries, little_endian=self.little_endian)
        return build_chunk(self.CHUNK_EXIF, self.EXIF_HEADER + tiff_block)

    def _split_exif_header(self, payload: bytes) -> Tuple[bytes, bytes]:
        """Separate the optional "Exif\\0\\0" marker from the TIFF block."""
        if payload.startswith(self.EXIF_HEADER):
            return self.EXIF_HEADER, payload[len(self.EXIF_HEADER):]
        return b'', payload

    def _with_exif_flag(self, vp8x_chunk: bytes) -> bytes:
        if len(vp8x_chunk) <= CHUNK_HEADER_SIZE:
            return vp8x_chunk
        chunk = bytearray(vp8x_chunk)
        chunk[CHUNK_HEADER_SIZE] |= self.FLAG_EXIF
        return bytes(chunk)


_default_codec = WebPCodec()


def get_webp_metadata(data: bytes) -> Dict[str, str]:
    """Read the metadata record of a WebP buffer with default options."""
    return _default_codec.get(data)


def set_webp_metadata(data: bytes, fields: Mapping[str, str]) -> bytes:
    """Write a metadata record into a WebP buffer with default options."""
    return _default_codec.set(data, fields)
