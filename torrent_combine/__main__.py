#!/usr/bin/env python3
"""Command-line entry point for the torrent-combine package.

This module provides a command-line interface for combining partially
downloaded copies of the same files into more complete ones.
"""

from .cli import main

if __name__ == "__main__":
    main()
