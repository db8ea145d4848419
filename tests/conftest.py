"""Pytest configuration and synthetic container builders."""

import struct
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

# ---------------------------------------------------------------------------
# TIFF / WEBP
# ---------------------------------------------------------------------------

VP8_PAYLOAD = b'\x9d\x01\x2a\x10\x00\x10\x00' + bytes(11)


def ascii_value(tag: int, text: str) -> Tuple[int, int, bytes]:
    """IFD value tuple for a NUL-terminated ASCII entry."""
    return tag, 2, text.encode('utf-8') + b'\x00'


def make_tiff(
    values: Sequence[Tuple[int, int, bytes]],
    little_endian: bool = True,
    tail: int = 0,
    offsets: Optional[Sequence[int]] = None,
) -> bytes:
    """
    Build a single-IFD TIFF block with values laid out after the table,
    each starting on an even offset. ``offsets`` overrides stored offsets.
    """
    e = '<' if little_endian else '>'
    header = (b'II' if little_endian else b'MM') + struct.pack(f'{e}HI', 42, 8)
    offset = 8 + 2 + 12 * len(values) + 4
    table = struct.pack(f'{e}H', len(values))
    data = b''
    for index, (tag, tag_type, value) in enumerate(values):
        if offset % 2:
            data += b'\x00'
            offset += 1
        stored = offsets[index] if offsets is not None else offset
        table += struct.pack(f'{e}HHII', tag, tag_type, len(value), stored)
        data += value
        offset += len(value)
    return header + table + struct.pack(f'{e}I', 0) + data + bytes(tail)


def riff_chunk(chunk_type: bytes, payload: bytes) -> bytes:
    chunk = chunk_type + struct.pack('<I', len(payload)) + payload
    if len(payload) % 2:
        chunk += b'\x00'
    return chunk


def exif_chunk(record: Dict[str, str], start_tag: int = 0x010F, header: bool = True,
               little_endian: bool = True) -> bytes:
    values = [
        ascii_value(start_tag - index, f'{key}:{value}')
        for index, (key, value) in enumerate(record.items())
    ]
    tiff = make_tiff(values, little_endian=little_endian)
    return riff_chunk(b'EXIF', (b'Exif\x00\x00' if header else b'') + tiff)


def make_webp(*chunks: bytes) -> bytes:
    if not chunks:
        chunks = (riff_chunk(b'VP8 ', VP8_PAYLOAD),)
    body = b''.join(chunks)
    return b'RIFF' + struct.pack('<I', 4 + len(body)) + b'WEBP' + body


def vp8x_chunk(flags: int = 0) -> bytes:
    # flags(1) reserved(3) canvas width-1 (3) canvas height-1 (3)
    return riff_chunk(b'VP8X', bytes([flags]) + bytes(3) + b'\x0f\x00\x00\x0f\x00\x00')


def list_riff_chunks(data: bytes) -> List[Tuple[bytes, bytes]]:
    """(type, payload) pairs of a RIFF buffer."""
    chunks = []
    offset = 12
    while offset + 8 <= len(data):
        chunk_type = data[offset:offset + 4]
        length = struct.unpack('<I', data[offset + 4:offset + 8])[0]
        chunks.append((chunk_type, data[offset + 8:offset + 8 + length]))
        offset += 8 + length + (length % 2)
    return chunks


# ---------------------------------------------------------------------------
# MP4
# ---------------------------------------------------------------------------

MP4_MEDIA = b'\x00\x00\x00\x10frame-data-0001\x00' * 4

WORKFLOW_UUID = b'comfyuiworkflow\x00'


def box(box_type: bytes, payload: bytes = b'') -> bytes:
    return struct.pack('>I', 8 + len(payload)) + box_type + payload


def full_box(box_type: bytes, payload: bytes = b'') -> bytes:
    return box(box_type, bytes(4) + payload)


FTYP = box(b'ftyp', b'isom' + struct.pack('>I', 512) + b'isomiso2avc1mp41')


def mp4_meta(record: Dict[str, str], quicktime: bool = False) -> bytes:
    hdlr = full_box(b'hdlr', bytes(4) + b'mdta' + bytes(12) + b'\x00')
    keys = full_box(
        b'keys',
        struct.pack('>I', len(record)) + b''.join(box(b'mdta', key.encode()) for key in record),
    )
    items = b''.join(
        box(struct.pack('>I', index), box(b'data', struct.pack('>II', 1, 0) + value.encode()))
        for index, value in enumerate(record.values(), start=1)
    )
    payload = hdlr + keys + box(b'ilst', items)
    return box(b'meta', payload) if quicktime else full_box(b'meta', payload)


def legacy_box(text: str) -> bytes:
    return full_box(b'wflo', text.encode())


def text_atom(key: str, text: str) -> bytes:
    value = text.encode()
    return box(b'\xa9' + key.encode('latin-1'), struct.pack('>HH', len(value), 0) + value)


def uuid_box(text: str) -> bytes:
    return box(b'uuid', WORKFLOW_UUID + text.encode())


def make_moov(udta: bytes = b'', chunk_offsets: Sequence[int] = (0,), co64: bool = False) -> bytes:
    if co64:
        table = full_box(
            b'co64',
            struct.pack('>I', len(chunk_offsets)) + b''.join(struct.pack('>Q', o) for o in chunk_offsets),
        )
    else:
        table = full_box(
            b'stco',
            struct.pack('>I', len(chunk_offsets)) + b''.join(struct.pack('>I', o) for o in chunk_offsets),
        )
    trak = box(b'trak', box(b'tkhd', bytes(84)) + box(b'mdia', box(b'minf', box(b'stbl', table))))
    return box(b'moov', box(b'mvhd', bytes(100)) + trak + udta)


def make_mp4(udta: bytes = b'', moov_first: bool = True, co64: bool = False, prefix: bytes = b'') -> bytes:
    """ftyp + [prefix] + moov + mdat (or ftyp + mdat + moov) with one chunk offset into mdat."""
    mdat = box(b'mdat', MP4_MEDIA)
    if moov_first:
        placeholder = make_moov(udta, co64=co64)
        media_offset = len(FTYP) + len(prefix) + len(placeholder) + 8
        return FTYP + prefix + make_moov(udta, [media_offset], co64=co64) + mdat
    media_offset = len(FTYP) + len(prefix) + 8
    return FTYP + prefix + mdat + make_moov(udta, [media_offset], co64=co64)


def read_chunk_offsets(data: bytes) -> List[int]:
    """Chunk offsets from moov/trak/mdia/minf/stbl/(stco|co64)."""
    from wfexif.mp4_codec import find_box, iterate_boxes

    moov = find_box(data, 0, len(data), b'moov')
    node = moov
    for box_type in (b'trak', b'mdia', b'minf', b'stbl'):
        node = find_box(data, node.data_start, node.end, box_type)
    offsets = []
    for table in iterate_boxes(data, node.data_start, node.end):
        fmt = {b'stco': '>I', b'co64': '>Q'}.get(table.type)
        if fmt is None:
            continue
        count = struct.unpack('>I', data[table.data_start + 4:table.data_start + 8])[0]
        width = struct.calcsize(fmt)
        start = table.data_start + 8
        for index in range(count):
            offsets.append(struct.unpack(fmt, data[start + index * width:start + (index + 1) * width])[0])
    return offsets


# ---------------------------------------------------------------------------
# FLAC
# ---------------------------------------------------------------------------

STREAMINFO = bytes(range(34))
FLAC_AUDIO = b'\xff\xf8\x69\x08' + b'audio-frames' * 8


def flac_block(block_type: int, payload: bytes, last: bool = False) -> bytes:
    return bytes([block_type | (0x80 if last else 0)]) + len(payload).to_bytes(3, 'big') + payload


def vorbis_payload(comments: Sequence[str], vendor: str = 'reference libFLAC 1.4.3 20230623') -> bytes:
    vendor_bytes = vendor.encode()
    payload = struct.pack('<I', len(vendor_bytes)) + vendor_bytes + struct.pack('<I', len(comments))
    for comment in comments:
        encoded = comment.encode()
        payload += struct.pack('<I', len(encoded)) + encoded
    return payload


def make_flac(
    record: Optional[Dict[str, str]] = None,
    padding: int = 0,
    vendor: str = 'reference libFLAC 1.4.3 20230623',
    audio: bytes = FLAC_AUDIO,
) -> bytes:
    """fLaC + STREAMINFO [+ VORBIS_COMMENT] [+ PADDING] + audio."""
    blocks = [(0, STREAMINFO)]
    if record is not None:
        blocks.append((4, vorbis_payload([f'{k}={v}' for k, v in record.items()], vendor)))
    if padding:
        blocks.append((1, bytes(padding)))
    data = b'fLaC'
    for index, (block_type, payload) in enumerate(blocks):
        data += flac_block(block_type, payload, last=index == len(blocks) - 1)
    return data + audio


def list_flac_blocks(data: bytes) -> List[Tuple[int, bool, bytes]]:
    """(type, is_last, payload) for every metadata block."""
    blocks = []
    offset = 4
    while offset + 4 <= len(data):
        header = data[offset]
        length = int.from_bytes(data[offset + 1:offset + 4], 'big')
        blocks.append((header & 0x7F, bool(header & 0x80), data[offset + 4:offset + 4 + length]))
        offset += 4 + length
        if header & 0x80:
            break
    return blocks


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def webp_file(tmp_path):
    """A WEBP file holding a workflow and a prompt."""
    path = tmp_path / 'render.webp'
    path.write_bytes(make_webp(
        riff_chunk(b'VP8 ', VP8_PAYLOAD),
        exif_chunk({'workflow': '{"nodes": []}', 'prompt': 'a red fox'}),
    ))
    return path


@pytest.fixture
def mp4_file(tmp_path):
    """An MP4 file without metadata, moov in front of mdat."""
    path = tmp_path / 'clip.mp4'
    path.write_bytes(make_mp4())
    return path


@pytest.fixture
def flac_file(tmp_path):
    """A FLAC file with a Vorbis comment block and trailing padding."""
    path = tmp_path / 'track.flac'
    path.write_bytes(make_flac({'TITLE': 'Night Drive', 'workflow': '{"a": 1}'}, padding=64))
    return path
