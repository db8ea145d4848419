# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
EXIF tag definitions used for workflow storage

Workflow-producing tools store "key:value" strings in ordinary IFD0 ASCII
tags. This module names the tags they are known to use and the TIFF field
types the TIFF engine understands.

Reference: https://exiv2.org/tags.html

Copyright 2025 DNAi inc.
"""

from typing import Dict, Iterable, Iterator

# Reserved tags seen in generated images
EXIF_TAGS: Dict[str, int] = {
    'ImageDescription': 0x010E,  # 270
    'Make': 0x010F,              # 271, workflow
    'Model': 0x0110,             # 272, prompt
    'UserComment': 0x9286,       # 37510
    'Copyright': 0x8298,         # 33432
    'WorkflowTag': 0x8298,       # same tag as Copyright
}

# Reverse lookup for log messages
TAG_NAMES: Dict[int, str] = {
    0x010E: 'ImageDescription',
    0x010F: 'Make',
    0x0110: 'Model',
    0x9286: 'UserComment',
    0x8298: 'Copyright',
}

# TIFF field types
TYPE_BYTE = 1
TYPE_ASCII = 2
TYPE_SHORT = 3
TYPE_LONG = 4
TYPE_UNDEFINED = 7

# New keys are written to tags counting down from this one
FIRST_CUSTOM_TAG = EXIF_TAGS['Make']


def tag_name(tag: int) -> str:
    """Return a readable name for a tag ID (hex when unknown)."""
    return TAG_NAMES.get(tag, f'0x{tag:04X}')


def allocate_tags(used: Iterable[int], start: int = FIRST_CUSTOM_TAG) -> Iterator[int]:
    """
    Yield free tag IDs counting down from ``start``.

    IDs already present in ``used`` are skipped so appended entries never
    shadow an existing entry of the same IFD.
    """
    taken = set(used)
    tag = start
    while tag > 0:
        if tag not in taken:
            yield tag
        tag -= 1
