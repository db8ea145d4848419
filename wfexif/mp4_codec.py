# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
MP4/MOV metadata codec

MP4 files are a tree of boxes (atoms): {size(4, big-endian), type(4),
payload}. A size of 1 means a 64-bit size follows the type; a size of 0
means the box runs to the end of its parent.

Metadata is read from, and written to, moov/udta:

- a legacy 'wflo' box: version/flags(4) followed by the raw workflow text
- a 'meta' box with 'hdlr' (handler 'mdta'), 'keys' (key names, 1-based)
  and 'ilst' (one item per key, in key order, each holding a 'data' box)
- QuickTime '\\xa9xxx' text atoms (read only; folded into keys/ilst on write)

A top-level 'uuid' box tagged with WORKFLOW_UUID is also read as a
workflow source with the lowest precedence.

Writing rebuilds udta from scratch and splices it into moov. The moov
size is recomputed, and when moov sits in front of the media data the
'stco'/'co64' chunk offsets are shifted by the size change.

Copyright 2025 DNAi inc.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from wfexif.exceptions import (
    BoxNotFoundError,
    InvalidContainerError,
    MalformedEntryError,
    MetadataWriteError,
    WFExifError,
)
from wfexif.metadata_utils import (
    WORKFLOW_KEY,
    decode_text,
    merge_records,
    strip_nul,
    validate_record,
)

logger = logging.getLogger(__name__)

BOX_HEADER_SIZE = 8
LARGE_BOX_HEADER_SIZE = 16

# 'comfyuiworkflow\0'
WORKFLOW_UUID = bytes([
    0x63, 0x6f, 0x6d, 0x66,
    0x79, 0x75, 0x69, 0x77,
    0x6f, 0x72, 0x6b, 0x66,
    0x6c, 0x6f, 0x77, 0x00,
])

# ilst data box type for UTF-8 text
DATA_TYPE_UTF8 = 1

STBL_PATH = (b'trak', b'mdia', b'minf', b'stbl')


@dataclass
class MP4Box:
    """Position of one box inside a buffer."""
    type: bytes
    offset: int
    size: int
    header_size: int = BOX_HEADER_SIZE

    @property
    def data_start(self) -> int:
        return self.offset + self.header_size

    @property
    def end(self) -> int:
        return self.offset + self.size


@dataclass
class MP4MetadataView:
    """
    Metadata found in one udta box.

    ``keys`` holds key names by position (index 0 is key 1); entries that
    could not be read are None so later names keep their index. ``items``
    holds (key index, text) pairs from ilst.
    """
    udta: Optional[MP4Box] = None
    legacy_workflow: Optional[str] = None
    text_atoms: Dict[str, str] = field(default_factory=dict)
    keys: List[Optional[str]] = field(default_factory=list)
    items: List[Tuple[int, str]] = field(default_factory=list)
    other_children: List[MP4Box] = field(default_factory=list)

    def to_record(self) -> Dict[str, str]:
        """Combine sources: text atoms < legacy box < keys/ilst."""
        record: Dict[str, str] = dict(self.text_atoms)
        if self.legacy_workflow is not None:
            record[WORKFLOW_KEY] = self.legacy_workflow
        record.update(resolve_items(self.keys, self.items))
        return record


def resolve_items(keys: Sequence[Optional[str]], items: Sequence[Tuple[int, str]]) -> Dict[str, str]:
    """Label ilst values with their key names."""
    record: Dict[str, str] = {}
    for key_index, value in items:
        if 1 <= key_index <= len(keys) and keys[key_index - 1]:
            record[keys[key_index - 1]] = value
        else:
            logger.debug("ilst item %d has no matching key", key_index)
    return record


def read_box_header(data: bytes, offset: int, end: int) -> Optional[MP4Box]:
    """
    Read the box header at ``offset``.

    Returns None when no complete box fits between ``offset`` and ``end``.
    """
    if offset + BOX_HEADER_SIZE > end:
        return None

    size = struct.unpack('>I', data[offset:offset + 4])[0]
    box_type = data[offset + 4:offset + 8]
    header_size = BOX_HEADER_SIZE
    if size == 1:
        if offset + LARGE_BOX_HEADER_SIZE > end:
            return None
        size = struct.unpack('>Q', data[offset + 8:offset + 16])[0]
        header_size = LARGE_BOX_HEADER_SIZE
    elif size == 0:
        size = end - offset

    if size < header_size or offset + size > end:
        return None
    return MP4Box(type=box_type, offset=offset, size=size, header_size=header_size)


def iterate_boxes(data: bytes, start: int, end: int) -> Iterator[MP4Box]:
    """Yield sibling boxes between ``start`` and ``end``."""
    offset = start
    while True:
        box = read_box_header(data, offset, end)
        if box is None:
            break
        yield box
        offset = box.end


def find_box(data: bytes, start: int, end: int, box_type: bytes) -> Optional[MP4Box]:
    """Return the first sibling box of ``box_type``, or None."""
    for box in iterate_boxes(data, start, end):
        if box.type == box_type:
            return box
    return None


def build_box(box_type: bytes, payload: bytes) -> bytes:
    """Build a box, switching to a 64-bit size when needed."""
    size = BOX_HEADER_SIZE + len(payload)
    if size <= 0xFFFFFFFF:
        return struct.pack('>I4s', size, box_type) + payload
    return struct.pack('>I4sQ', 1, box_type, LARGE_BOX_HEADER_SIZE + len(payload)) + payload


def build_full_box(box_type: bytes, payload: bytes, version: int = 0, flags: int = 0) -> bytes:
    """Build a box whose payload starts with version(1) and flags(3)."""
    return build_box(box_type, struct.pack('>I', (version << 24) | flags) + payload)


class MP4Codec:
    """
    Reads and writes metadata records in MP4/MOV files.

    Reading never raises; writing raises InvalidContainerError without a
    leading 'ftyp' box and BoxNotFoundError without a 'moov' box.
    """

    LEGACY_BOX = b'wflo'
    HANDLER_TYPE = b'mdta'
    KEY_NAMESPACE = b'mdta'

    def __init__(self, write_legacy_box: bool = True, update_chunk_offsets: bool = True):
        """
        Initialize the codec.

        Args:
            write_legacy_box: Also store the workflow in a 'wflo' box for
                readers that predate keys/ilst storage
            update_chunk_offsets: Shift stco/co64 entries when the rebuilt
                moov changes size in front of the media data
        """
        self.write_legacy_box = write_legacy_box
        self.update_chunk_offsets = update_chunk_offsets

    @staticmethod
    def has_ftyp(data: bytes) -> bool:
        return len(data) >= BOX_HEADER_SIZE and data[4:8] == b'ftyp'

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get(self, data: bytes) -> Dict[str, str]:
        """
        Read the metadata record from an MP4 buffer.

        Args:
            data: MP4 file data

        Returns:
            Record of key/value strings; empty (and logged) on any failure
        """
        try:
            data = bytes(data)
            if not self.has_ftyp(data):
                raise InvalidContainerError("Not a valid MP4 file")
            uuid_record: Dict[str, str] = {}
            record: Dict[str, str] = {}
            self._parse_boxes(data, 0, len(data), record, uuid_record)
            return merge_records(uuid_record, record)
        except Exception as exc:
            logger.error("Error extracting MP4 metadata: %s", exc)
            return {}

    def _parse_boxes(
        self,
        data: bytes,
        start: int,
        end: int,
        record: Dict[str, str],
        uuid_record: Dict[str, str]
    ) -> None:
        for box in iterate_boxes(data, start, end):
            if box.type == b'moov':
                self._parse_boxes(data, box.data_start, box.end, record, uuid_record)
            elif box.type == b'udta':
                record.update(self.read_udta(data, box).to_record())
            elif box.type == b'meta':
                keys, items = self._parse_meta(data, box)
                record.update(resolve_items(keys, items))
            elif box.type == b'uuid':
                workflow = self._parse_uuid(data, box)
                if workflow is not None:
                    uuid_record[WORKFLOW_KEY] = workflow

    def read_udta(self, data: bytes, udta: MP4Box) -> MP4MetadataView:
        """
        Collect every metadata source inside a udta box.

        Args:
            data: MP4 file data
            udta: The udta box

        Returns:
            MP4MetadataView; children that carry no metadata are listed in
            ``other_children`` so writers can keep them
        """
        view = MP4MetadataView(udta=udta)
        for child in iterate_boxes(data, udta.data_start, udta.end):
            if child.type == self.LEGACY_BOX and child.size >= child.header_size + 4:
                payload = data[child.data_start + 4:child.end]
                view.legacy_workflow = strip_nul(decode_text(payload))
            elif child.type == b'meta':
                view.keys, view.items = self._parse_meta(data, child)
            elif child.type[:1] == b'\xa9' and child.size > child.header_size + 4:
                key = child.type[1:].decode('latin-1')
                payload = data[child.data_start + 4:child.end]
                view.text_atoms[key] = strip_nul(decode_text(payload))
            else:
                view.other_children.append(child)
        return view

    def _parse_meta(self, data: bytes, meta: MP4Box) -> Tuple[List[Optional[str]], List[Tuple[int, str]]]:
        """
        Parse hdlr/keys/ilst children of a meta box.

        ilst items are positional, so all keys are collected in a first
        pass before the items are read in a second one.
        """
        start = meta.data_start
        if data[start + 4:start + 8] != b'hdlr':
            # ISO full box: skip version/flags. QuickTime meta boxes have none.
            start += 4

        keys: List[Optional[str]] = []
        ilst: Optional[MP4Box] = None
        for child in iterate_boxes(data, start, meta.end):
            if child.type == b'keys':
                keys = self._parse_keys(data, child)
            elif child.type == b'ilst':
                ilst = child

        items: List[Tuple[int, str]] = []
        if ilst is not None and keys:
            items = self._parse_ilst(data, ilst)
        return keys, items

    def _parse_keys(self, data: bytes, keys_box: MP4Box) -> List[Optional[str]]:
        """Read key names: version/flags(4), count(4), then {size, namespace, name}."""
        count_at = keys_box.data_start + 4
        if count_at + 4 > keys_box.end:
            logger.warning("Truncated 'keys' box at offset %d", keys_box.offset)
            return []
        entry_count = struct.unpack('>I', data[count_at:count_at + 4])[0]

        keys: List[Optional[str]] = []
        key_offset = count_at + 4
        for index in range(entry_count):
            if key_offset + 8 > keys_box.end:
                logger.warning("'keys' box lists %d entries but only %d fit", entry_count, index)
                break
            key_size = struct.unpack('>I', data[key_offset:key_offset + 4])[0]
            if key_size < 8:
                logger.warning("Invalid key entry size %d at offset %d", key_size, key_offset)
                break
            if key_size > 8 and key_offset + key_size <= keys_box.end:
                name = strip_nul(decode_text(data[key_offset + 8:key_offset + key_size]))
                keys.append(name or None)
            else:
                keys.append(None)
            key_offset += key_size
        return keys

    def _parse_ilst(self, data: bytes, ilst: MP4Box) -> List[Tuple[int, str]]:
        items: List[Tuple[int, str]] = []
        for position, item in enumerate(iterate_boxes(data, ilst.data_start, ilst.end), start=1):
            try:
                value = self._parse_item(data, item)
            except MalformedEntryError as exc:
                logger.warning("Skipping ilst item %d: %s", position, exc)
                continue
            if value is not None:
                items.append((position, value))
        return items

    def _parse_item(self, data: bytes, item: MP4Box) -> Optional[str]:
        """
        Read the text of an ilst item.

        The item's first child must be a 'data' box: size(4), 'data',
        type(4), locale(4), payload. Only UTF-8 text (type 1) is returned.

        Raises:
            MalformedEntryError: If the data box is missing or truncated
        """
        data_box = read_box_header(data, item.data_start, item.end)
        if data_box is None or data_box.type != b'data':
            raise MalformedEntryError("no complete 'data' box")
        if data_box.data_start + 8 > data_box.end:
            raise MalformedEntryError("truncated 'data' box header")

        data_type = struct.unpack('>I', data[data_box.data_start:data_box.data_start + 4])[0]
        if data_type != DATA_TYPE_UTF8:
            logger.debug("Skipping non-text ilst value (type %d)", data_type)
            return None
        return strip_nul(decode_text(data[data_box.data_start + 8:data_box.end]))

    def _parse_uuid(self, data: bytes, box: MP4Box) -> Optional[str]:
        """Return the workflow stored in a WORKFLOW_UUID box, if this is one."""
        uuid_start = box.data_start
        if uuid_start + 16 > box.end or data[uuid_start:uuid_start + 16] != WORKFLOW_UUID:
            return None
        payload = data[uuid_start + 16:box.end]
        if not payload:
            return None
        return strip_nul(decode_text(payload))

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def set(self, data: bytes, fields: Mapping[str, str]) -> bytes:
        """
        Write a metadata record into an MP4 buffer.

        Existing udta metadata is read first and the incoming record is
        merged over it; the merged record replaces the udta box.

        Args:
            data: Original MP4 file data
            fields: Record to write

        Returns:
            New MP4 file data

        Raises:
            InvalidContainerError: If the file does not start with 'ftyp'
            BoxNotFoundError: If there is no 'moov' box
            MetadataWriteError: If the file cannot be rebuilt
        """
        data = bytes(data)
        if not self.has_ftyp(data):
            raise InvalidContainerError("Not a valid MP4 file")
        incoming = validate_record(fields)

        try:
            return self._write(data, incoming)
        except WFExifError:
            raise
        except Exception as exc:
            raise MetadataWriteError(f"Failed to write MP4 file: {exc}") from exc

    def _write(self, data: bytes, incoming: Dict[str, str]) -> bytes:
        moov = find_box(data, 0, len(data), b'moov')
        if moov is None:
            raise BoxNotFoundError("No 'moov' box found in MP4 file")

        udta = find_box(data, moov.data_start, moov.end, b'udta')
        if udta is not None:
            view = self.read_udta(data, udta)
            merged = merge_records(view.to_record(), incoming)
            kept = b''.join(data[child.offset:child.end] for child in view.other_children)
            new_udta = self.build_udta_box(merged, kept)
            children = data[moov.data_start:udta.offset] + new_udta + data[udta.end:moov.end]
        else:
            new_udta = self.build_udta_box(incoming)
            children = data[moov.data_start:moov.end] + new_udta

        new_moov = build_box(b'moov', children)
        delta = len(new_moov) - moov.size
        if delta and self.update_chunk_offsets and moov.end < len(data):
            new_moov = self._shift_chunk_offsets(new_moov, delta, threshold=moov.end)

        logger.debug("Rebuilt moov: %d -> %d bytes", moov.size, len(new_moov))
        return data[:moov.offset] + new_moov + data[moov.end:]

    def build_udta_box(self, record: Mapping[str, str], extra: bytes = b'') -> bytes:
        """
        Build a udta box for ``record``.

        Contents: the legacy 'wflo' box (workflow only), a meta box with
        every key, then ``extra`` (children carried over verbatim).
        """
        parts: List[bytes] = []
        if self.write_legacy_box and WORKFLOW_KEY in record:
            parts.append(build_full_box(self.LEGACY_BOX, record[WORKFLOW_KEY].encode('utf-8')))
        if record:
            parts.append(self.build_meta_box(record))
        parts.append(extra)
        return build_box(b'udta', b''.join(parts))

    def build_meta_box(self, record: Mapping[str, str]) -> bytes:
        """Build meta(hdlr, keys, ilst) holding every key of ``record``."""
        # pre_defined(4), handler type(4), reserved(12), empty name
        hdlr = build_full_box(b'hdlr', struct.pack('>I4s', 0, self.HANDLER_TYPE) + bytes(12) + b'\x00')

        key_entries = b''.join(
            build_box(self.KEY_NAMESPACE, key.encode('utf-8')) for key in record
        )
        keys = build_full_box(b'keys', struct.pack('>I', len(record)) + key_entries)

        items = bytearray()
        for index, value in enumerate(record.values(), start=1):
            data_box = build_box(b'data', struct.pack('>II', DATA_TYPE_UTF8, 0) + value.encode('utf-8'))
            # item type is the 1-based key index
            items.extend(build_box(struct.pack('>I', index), data_box))
        ilst = build_box(b'ilst', bytes(items))

        return build_full_box(b'meta', hdlr + keys + ilst)

    def _shift_chunk_offsets(self, moov: bytes, delta: int, threshold: int) -> bytes:
        """
        Shift chunk offsets of every track by ``delta``.

        Only offsets at or past ``threshold`` (the old end of moov) point
        into data that moved.
        """
        root = read_box_header(moov, 0, len(moov))
        if root is None:
            return moov

        patched = bytearray(moov)
        for stbl in self._find_path(moov, root, STBL_PATH):
            for table in iterate_boxes(moov, stbl.data_start, stbl.end):
                if table.type == b'stco':
                    self._shift_table(patched, table, '>I', delta, threshold)
                elif table.type == b'co64':
                    self._shift_table(patched, table, '>Q', delta, threshold)
        return bytes(patched)

    def _find_path(self, data: bytes, parent: MP4Box, path: Sequence[bytes]) -> Iterator[MP4Box]:
        if not path:
            yield parent
            return
        for child in iterate_boxes(data, parent.data_start, parent.end):
            if child.type == path[0]:
                yield from self._find_path(data, child, path[1:])

    @staticmethod
    def _shift_table(buffer: bytearray, table: MP4Box, fmt: str, delta: int, threshold: int) -> None:
        width = struct.calcsize(fmt)
        count_at = table.data_start + 4
        if count_at + 4 > table.end:
            logger.warning("Truncated '%s' box", table.type.decode('latin-1'))
            return
        entry_count = struct.unpack_from('>I', buffer, count_at)[0]

        position = count_at + 4
        for _ in range(entry_count):
            if position + width > table.end:
                logger.warning("'%s' box shorter than its entry count", table.type.decode('latin-1'))
                break
            offset = struct.unpack_from(fmt, buffer, position)[0]
            if offset >= threshold:
                offset += delta
                if offset < 0 or offset >= 1 << (8 * width):
                    raise MetadataWriteError(
                        f"Chunk offset out of range after moving media data: {offset}"
                    )
                struct.pack_into(fmt, buffer, position, offset)
            position += width


_default_codec = MP4Codec()


def get_mp4_metadata(data: bytes) -> Dict[str, str]:
    """Read the metadata record of an MP4 buffer with default options."""
    return _default_codec.get(data)


def set_mp4_metadata(data: bytes, fields: Mapping[str, str]) -> bytes:
    """Write a metadata record into an MP4 buffer with default options."""
    return _default_codec.set(data, fields)
