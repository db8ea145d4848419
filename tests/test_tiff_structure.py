"""Tests for the single-IFD TIFF engine."""

import itertools
import logging

import pytest

from wfexif.exceptions import MetadataReadError, MetadataWriteError
from wfexif.exif_tags import FIRST_CUSTOM_TAG, TYPE_ASCII, TYPE_SHORT, allocate_tags, tag_name
from wfexif.tiff_structure import IFDEntry, decode_tiff_block, encode_tiff_block

from conftest import ascii_value, make_tiff


def test_decode_ascii_entries():
    """ASCII entries are decoded without their NUL terminator."""
    block = make_tiff([
        ascii_value(0x010F, 'workflow:{"nodes": []}'),
        ascii_value(0x0110, 'prompt:a cat'),
    ])
    decoded = decode_tiff_block(block)

    assert decoded.little_endian is True
    assert decoded.ifd_offset == 8
    assert decoded.num_entries == 2
    assert [entry.ascii for entry in decoded.entries] == ['workflow:{"nodes": []}', 'prompt:a cat']
    assert [entry.tag for entry in decoded.entries] == [0x010F, 0x0110]
    assert decoded.tail_padding == 0


def test_encode_reproduces_sequential_layout():
    """Decoding then encoding a sequentially laid out block is byte-identical."""
    block = make_tiff([
        ascii_value(0x010F, 'prompt:x'),        # odd length, next value needs a pad byte
        ascii_value(0x010E, 'workflow:{}'),
        (0x0112, TYPE_SHORT, b'\x01\x00'),
    ])
    decoded = decode_tiff_block(block)

    assert encode_tiff_block(decoded.entries, tail_padding=decoded.tail_padding) == block


def test_values_start_on_word_boundaries():
    block = encode_tiff_block([
        IFDEntry.from_text(0x010F, 'a:1'),
        IFDEntry.from_text(0x010E, 'bb:22'),
    ])
    decoded = decode_tiff_block(block)

    assert all(entry.offset % 2 == 0 for entry in decoded.entries)
    assert not any(entry.offset_mismatch for entry in decoded.entries)


def test_big_endian_block():
    block = make_tiff([ascii_value(0x010F, 'workflow:{}')], little_endian=False)
    decoded = decode_tiff_block(block)

    assert block[:2] == b'MM'
    assert decoded.little_endian is False
    assert decoded.entries[0].ascii == 'workflow:{}'
    assert encode_tiff_block(decoded.entries, little_endian=False) == block


def test_tail_padding_preserved():
    block = make_tiff([ascii_value(0x010F, 'a:b')], tail=6)
    decoded = decode_tiff_block(block)

    assert decoded.tail_padding == 6
    assert encode_tiff_block(decoded.entries, tail_padding=6) == block


def test_negative_tail_padding_rejected():
    with pytest.raises(MetadataWriteError):
        encode_tiff_block([], tail_padding=-1)


def test_next_ifd_offset_is_zero():
    block = encode_tiff_block([IFDEntry.from_text(0x010F, 'a:b')])
    # header(8) + count(2) + one entry(12), then next-IFD pointer
    assert block[22:26] == b'\x00\x00\x00\x00'


def test_offset_mismatch_falls_back_to_predicted(caplog):
    """A stored offset that lands on an embedded NUL is replaced by the predicted one."""
    values = [ascii_value(0x010F, 'key:value'), ascii_value(0x010E, 'b:22')]
    predicted = 8 + 2 + 12 * 2 + 4
    block = make_tiff(values, offsets=[predicted + 5, predicted + 10])

    with caplog.at_level(logging.WARNING):
        decoded = decode_tiff_block(block)

    assert decoded.entries[0].ascii == 'key:value'
    assert decoded.entries[0].offset_mismatch
    assert 'predicted offset' in caplog.text


def test_stored_offset_preferred_when_clean():
    """If the stored slice has no embedded NUL it is used even when it disagrees."""
    values = [ascii_value(0x010F, 'a:1'), ascii_value(0x010E, 'b:2')]
    first, second = 38, 42
    block = make_tiff(values, offsets=[second, first])
    decoded = decode_tiff_block(block)

    assert [entry.ascii for entry in decoded.entries] == ['b:2', 'a:1']


def test_embedded_nul_in_both_slices_is_omitted(caplog):
    block = make_tiff([(0x010F, TYPE_ASCII, b'a\x00b:c\x00')])

    with caplog.at_level(logging.WARNING):
        decoded = decode_tiff_block(block)

    assert decoded.entries[0].ascii is None
    assert 'Skipping ASCII entry' in caplog.text


def test_non_ascii_entries_keep_raw_value():
    block = make_tiff([(0x0112, TYPE_SHORT, b'\x06\x00')])
    entry = decode_tiff_block(block).entries[0]

    assert entry.ascii is None
    assert entry.value == b'\x06\x00'
    assert entry.count == 2


def test_non_ascii_value_read_and_written_out_of_line(caplog):
    block = make_tiff([(0x0112, TYPE_SHORT, b'\x06\x00')])
    with caplog.at_level(logging.DEBUG, logger='wfexif.tiff_structure'):
        decoded = decode_tiff_block(block)
    assert 'read out of line' in caplog.text

    reencoded = decode_tiff_block(encode_tiff_block(decoded.entries)).entries[0]
    assert reencoded.value == b'\x06\x00'
    # header + entry count + one entry + next IFD offset
    assert reencoded.offset >= 8 + 2 + 12 + 4


@pytest.mark.parametrize('block', [
    b'II*\x00',
    b'XX*\x00\x08\x00\x00\x00\x00\x00',
    b'II*\x00\xff\x00\x00\x00',
    b'II*\x00\x08\x00\x00\x00\x05\x00',
])
def test_invalid_blocks_raise(block):
    with pytest.raises(MetadataReadError):
        decode_tiff_block(block)


def test_allocate_tags_counts_down_skipping_used():
    tags = list(itertools.islice(allocate_tags([FIRST_CUSTOM_TAG, 0x010D]), 3))
    assert tags == [0x010E, 0x010C, 0x010B]


def test_tag_name():
    assert tag_name(0x010F) == 'Make'
    assert tag_name(0x1234) == '0x1234'
