# Copyright 2025 DNAi inc.

# Dual-licensed under the DNAi Free License v1.1 and the
# DNAi Commercial License v1.1.
# See the LICENSE files in the project root for details.

"""
Command-line interface for WFExif

Reads the metadata record of one or more media files, or writes
key/value pairs (typically the workflow JSON) into them.

Copyright 2025 DNAi inc.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from wfexif import __version__
from wfexif.core import WFExif
from wfexif.exceptions import WFExifError
from wfexif.metadata_utils import WORKFLOW_KEY


def format_output(metadata: Dict[str, str], format_type: str = "text") -> str:
    """
    Format a metadata record for printing.

    Args:
        metadata: Metadata record
        format_type: Output format ('text' or 'json')

    Returns:
        Formatted output string
    """
    if format_type == "json":
        return json.dumps(metadata, indent=2, ensure_ascii=False)
    lines = []
    for tag, value in metadata.items():
        lines.append(f"{tag}: {value}")
    return "\n".join(lines)


def parse_tag_assignments(args: List[str]) -> Dict[str, str]:
    """
    Parse KEY=VALUE assignments.

    Raises:
        ValueError: If an assignment has no '=' or an empty key
    """
    tags: Dict[str, str] = {}
    for arg in args:
        key, sep, value = arg.partition('=')
        if not sep or not key:
            raise ValueError(f"Expected KEY=VALUE, got {arg!r}")
        tags[key] = value
    return tags


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='wfexif',
        description="WFExif - Read and write workflow metadata embedded in WEBP, MP4 and FLAC files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Read all metadata
  wfexif render.webp

  # Read in JSON format
  wfexif -j clip.mp4 track.flac

  # Print only the workflow
  wfexif -k workflow render.webp

  # Write the workflow from a file
  wfexif --workflow-file workflow.json render.webp

  # Write extra keys to a copy
  wfexif -s prompt="a red fox" -o tagged.flac track.flac
        """
    )
    parser.add_argument('files', nargs='+', help='File(s) to process')
    parser.add_argument('-j', '--json', action='store_true', help='Output metadata in JSON format')
    parser.add_argument('-k', '--key', help='Print only the value of this key')
    parser.add_argument('-w', '--workflow', help='Workflow text to write')
    parser.add_argument('--workflow-file', type=Path, help='Read the workflow to write from a file')
    parser.add_argument('-s', '--set', action='append', default=[], metavar='KEY=VALUE',
                        help='Write a metadata value (repeatable)')
    parser.add_argument('-O', '--option', action='append', default=[], metavar='NAME=VALUE',
                        help='Set a write option, e.g. VendorString=... (repeatable)')
    parser.add_argument('-o', '--output', type=Path, help='Write to this path instead of in place (single file only)')
    parser.add_argument('-v', '--verbose', action='count', default=0, help='Verbose logging (-vv for debug)')
    parser.add_argument('-q', '--quiet', action='store_true', help='Only log errors')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format='%(levelname)s %(name)s: %(message)s')


def read_file(file_path: Path, key: Optional[str], format_type: str) -> str:
    with WFExif(file_path, read_only=True) as wf:
        if key is not None:
            value = wf.get_tag(key)
            if value is None:
                raise WFExifError(f"Key '{key}' not found in {file_path}")
            return value
        return format_output(wf.get_all_metadata(), format_type)


def write_file(
    file_path: Path,
    tags: Dict[str, str],
    options: Dict[str, str],
    output_path: Optional[Path] = None
) -> str:
    with WFExif(file_path) as wf:
        for option_name, value in options.items():
            wf.set_option(option_name, value)
        wf.set_tags(tags)
        wf.save(output_path)
    return f"Metadata written successfully to {output_path or file_path}"


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point. Returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        tags = parse_tag_assignments(args.set)
        options = parse_tag_assignments(args.option)
    except ValueError as e:
        parser.error(str(e))

    unknown = set(options) - set(WFExif.available_options())
    if unknown:
        parser.error(f"Unknown option(s): {', '.join(sorted(unknown))}")

    if args.workflow is not None and args.workflow_file is not None:
        parser.error("--workflow and --workflow-file are mutually exclusive")
    if args.workflow is not None:
        tags[WORKFLOW_KEY] = args.workflow
    elif args.workflow_file is not None:
        try:
            tags[WORKFLOW_KEY] = args.workflow_file.read_text(encoding='utf-8')
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if args.output is not None and len(args.files) != 1:
        parser.error("--output requires exactly one input file")

    format_type = "json" if args.json else "text"
    failures = 0
    results: Dict[str, Dict[str, str]] = {}

    for name in args.files:
        file_path = Path(name)
        try:
            if tags:
                print(write_file(file_path, tags, options, args.output))
            elif args.json and args.key is None:
                with WFExif(file_path, read_only=True) as wf:
                    results[str(file_path)] = wf.get_all_metadata()
            else:
                output = read_file(file_path, args.key, format_type)
                if len(args.files) > 1:
                    print(f"======== {file_path}")
                print(output)
        except (WFExifError, OSError, ValueError) as e:
            print(f"Error: {file_path}: {e}", file=sys.stderr)
            failures += 1

    if results:
        if len(args.files) == 1:
            print(format_output(results[str(Path(args.files[0]))], "json"))
        else:
            print(json.dumps(results, indent=2, ensure_ascii=False))

    return 1 if failures else 0
