#!/usr/bin/env python3
"""Command-line interface for torrent-combine."""

# Standard library imports
import argparse
import sys

# Local application imports
from torrent_combine.torrent_combine import DEFAULT_CHUNK_SIZE, MIN_FILE_SIZE, CombineOptions, combine_torrents


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description=("Combine partially downloaded copies of the same files into more complete ones"))
    parser.add_argument("root_dir", help="Directory to scan recursively for partial downloads")
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Atomically replace incomplete files in place instead of writing $file.merged",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be written without writing anything",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable the progress bar",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Also report files that have no other copy to combine with",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of groups to process in parallel (default: 1)",
    )
    parser.add_argument(
        "--min-size",
        type=int,
        default=MIN_FILE_SIZE,
        help=f"Ignore files of this many bytes or fewer (default: {MIN_FILE_SIZE})",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help=argparse.SUPPRESS,
    )
    return parser.parse_args()


def main() -> None:
    """Parse programm arguments and run the combine pass."""
    try:
        args = parse_args()
        options = CombineOptions(
            replace=args.replace,
            dry_run=args.dry_run,
            no_progress=args.no_progress,
            verbose=args.verbose,
            min_size=args.min_size,
            chunk_size=args.chunk_size,
            workers=args.workers,
        )
        summary = combine_torrents(args.root_dir, options=options)
        if not summary.groups_failed:
            print("Combine finished")
        sys.exit(0)

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
