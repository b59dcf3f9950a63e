"""Pytest configuration and fixtures."""

# Standard library imports
from collections.abc import Callable
from pathlib import Path

# Third-party imports
import pytest

# Local application imports
from torrent_combine.torrent_combine import MB

# Just over the minimum size so every copy takes part in grouping
PAYLOAD_SIZE = MB + 4


@pytest.fixture
def make_copy() -> Callable[..., Path]:
    """Return a builder for pre-allocated partial copies.

    ``pieces`` maps offsets to the bytes already downloaded there; everything
    else stays zero, like a file a torrent client has pre-allocated.
    """

    def _make(path: Path, pieces: dict[int, bytes], size: int = PAYLOAD_SIZE) -> Path:
        content = bytearray(size)
        for offset, data in pieces.items():
            content[offset : offset + len(data)] = data
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(bytes(content))
        return path

    return _make


@pytest.fixture
def expected_content() -> Callable[..., bytes]:
    """Return a builder for the bytes a merge is expected to produce."""

    def _expected(pieces: dict[int, bytes], size: int = PAYLOAD_SIZE) -> bytes:
        content = bytearray(size)
        for offset, data in pieces.items():
            content[offset : offset + len(data)] = data
        return bytes(content)

    return _expected
