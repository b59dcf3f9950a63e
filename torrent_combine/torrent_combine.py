#!/usr/bin/env python3
"""Combine partially downloaded copies of the same file into a more complete one.

Torrent clients pre-allocate their payload files and leave zero bytes wherever a
piece has not arrived yet. Independent partial downloads of the same content
therefore hold (mostly) disjoint sets of non-zero byte ranges. This module groups
such copies by basename and size, proves that their non-zero bytes never disagree,
and writes the byte-wise OR of the group next to (or over) every copy that is still
missing data.
"""

import os
import shutil
import sys
import tempfile
import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, NamedTuple, Protocol, TypeAlias, runtime_checkable

from tqdm import tqdm


@runtime_checkable
class _ProgressBar(Protocol):
    """Protocol for progress bar implementations."""

    total: int | float | None

    def update(self, n: int) -> None:
        """Update progress by n bytes."""
        ...

    def refresh(self) -> None:
        """Redraw after the total changed."""
        ...

    def set_postfix(self, **kwargs: object) -> None:
        """Set postfix text."""
        ...

    def write(self, msg: str) -> None:
        """Write a message."""
        ...

    def __enter__(self) -> "_ProgressBar":
        """Context manager entry."""
        ...

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        ...


# Simple progress indicator for --no-progress option
class SimpleProgress:
    def __init__(self, total: int) -> None:
        self.total = total
        self.current = 0

    def __enter__(self) -> "SimpleProgress":
        return self

    def __exit__(self, *args: object) -> None:
        _ = args  # Mark as intentionally unused
        pass

    def update(self, n: int) -> None:
        self.current += n

    def refresh(self) -> None:
        pass

    def set_postfix(self, **kwargs: object) -> None:
        _ = kwargs  # Mark as intentionally unused
        pass

    def write(self, msg: str) -> None:
        print(msg)


# Constants
KB = 1024
MB = KB * 1024
GB = MB * 1024
TB = GB * 1024
PB = TB * 1024

MIN_FILE_SIZE = MB  # files must be strictly larger than this
DEFAULT_CHUNK_SIZE = 64 * KB
MERGED_SUFFIX = ".merged"
STAGED_SUFFIX = ".combine.tmp"
MAX_DISPLAY_FILENAME_LENGTH = 20

# Maps every byte value to 0x00 (zero) or 0xFF (non-zero)
_NONZERO_TABLE = bytes([0x00] + [0xFF] * 255)

# Type aliases

StrPath: TypeAlias = str | os.PathLike[str]


class GroupKey(NamedTuple):
    """Files sharing a key are candidate copies of one logical file."""

    basename: str
    size: int


@dataclass(frozen=True)
class FileHandle:
    """A discovered file and its byte length at discovery time."""

    path: Path
    size: int

    @property
    def key(self) -> GroupKey:
        return GroupKey(self.path.name, self.size)


@dataclass(frozen=True)
class Conflict:
    """Offset at which group members hold different non-zero bytes."""

    offset: int
    values: tuple[int, ...]  # sorted distinct non-zero values

    def describe(self) -> str:
        shown = ", ".join(f"0x{value:02x}" for value in self.values)
        return f"offset {self.offset}: {shown}"


class Outcome(Enum):
    COMPLETE = "complete"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True)
class OutcomeRecord:
    """What happened to one original file."""

    path: Path
    outcome: Outcome
    destination: Path | None = None
    detail: str = ""


@dataclass
class GroupResult:
    key: GroupKey
    records: list[OutcomeRecord] = field(default_factory=list)
    error: Exception | None = None
    inert: bool = False


@dataclass
class CombineSummary:
    """Results of one run, in group discovery order."""

    results: list[GroupResult] = field(default_factory=list)

    @property
    def records(self) -> list[OutcomeRecord]:
        return [record for result in self.results for record in result.records]

    @property
    def groups_failed(self) -> int:
        return sum(1 for result in self.results if result.error is not None)

    @property
    def groups_inert(self) -> int:
        return sum(1 for result in self.results if result.inert)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for record in self.records if record.outcome is outcome)


class CombineError(Exception):
    """Base exception for torrent-combine errors."""

    pass


class DiscoveryError(CombineError):
    """A discovered path could not be inspected."""


class SizeMismatchError(CombineError):
    """A file's size changed between discovery and processing."""

    def __init__(self, path: Path, expected: int, actual: int) -> None:
        super().__init__(f"Size of {path} changed: expected {expected} bytes, found {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class ConsistencyConflictError(CombineError):
    """Group members disagree on a non-zero byte."""

    def __init__(self, conflict: Conflict, paths: Sequence[Path]) -> None:
        super().__init__(f"Conflicting non-zero bytes at {conflict.describe()}")
        self.conflict = conflict
        self.paths = list(paths)


class FatalStartupError(CombineError):
    """The run cannot start at all."""


@dataclass
class CombineOptions:
    """Options for combining partial downloads."""

    replace: bool = False
    dry_run: bool = False
    no_progress: bool = False
    verbose: bool = False
    min_size: int = MIN_FILE_SIZE
    chunk_size: int = DEFAULT_CHUNK_SIZE
    workers: int = 1


class _Writer(Protocol):
    def write(self, message: str) -> None: ...


class _PlainWriter:
    """Writer used before a progress bar exists."""

    def write(self, message: str) -> None:
        print(message)


class _TqdmWriter:
    """Writer adapter for tqdm progress bars."""

    def __init__(self, pbar: tqdm | SimpleProgress) -> None:
        self.pbar = pbar

    def write(self, message: str) -> None:
        self.pbar.write(message)


@dataclass
class _RunContext:
    """Everything a group worker needs; shared read-only apart from the progress bar."""

    options: CombineOptions
    pbar: _ProgressBar
    writer: _Writer
    lock: threading.Lock = field(default_factory=threading.Lock)

    def advance(self, n: int) -> None:
        with self.lock:
            self.pbar.update(n)

    def extend(self, n: int) -> None:
        with self.lock:
            self.pbar.total = (self.pbar.total or 0) + n
            self.pbar.refresh()

    def report(self, *messages: str) -> None:
        with self.lock:
            for message in messages:
                self.writer.write(message)

    def show(self, key: GroupKey) -> None:
        with self.lock:
            _update_progress_postfix(self.pbar, key.basename)


def human_readable_size(size: int) -> str:
    """Convert size in bytes to human readable format.

    Args:
        size: Size in bytes

    Returns:
        str: Human readable size string (e.g., "1.5 MB")

    """
    size_float = float(size)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_float) < KB:
            return f"{size_float:3.1f} {unit}"
        size_float /= KB
    return f"{size_float:.1f} PB"


def merged_path(path: Path) -> Path:
    """Return the sibling path that receives merged content in non-replace mode."""
    return path.with_name(f"{path.name}{MERGED_SUFFIX}")


class ChunkReader:
    """Sequential fixed-size reads from one group member.

    The file must keep the size recorded at discovery; any growth or shrinkage
    raises SizeMismatchError.
    """

    def __init__(self, handle: FileHandle, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.handle = handle
        self.chunk_size = chunk_size
        self._file: BinaryIO | None = None
        self._position = 0

    def __enter__(self) -> "ChunkReader":
        self._file = self.handle.path.open("rb")
        try:
            actual = os.fstat(self._file.fileno()).st_size
            if actual != self.handle.size:
                raise SizeMismatchError(self.handle.path, self.handle.size, actual)
        except BaseException:
            self._file.close()
            self._file = None
            raise
        return self

    def __exit__(self, *args: object) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def read_chunk(self) -> bytes:
        """Return the next chunk; only the last one may be shorter than chunk_size."""
        if self._file is None:
            raise CombineError(f"Reader for {self.handle.path} is not open")
        wanted = min(self.chunk_size, self.handle.size - self._position)
        data = self._file.read(wanted)
        if len(data) != wanted:
            raise SizeMismatchError(self.handle.path, self.handle.size, self._position + len(data))
        self._position += wanted
        if self._position == self.handle.size and self._file.read(1):
            raise SizeMismatchError(self.handle.path, self.handle.size, os.fstat(self._file.fileno()).st_size)
        return data


class StagedOutput:
    """Stage content in a temp file beside ``destination`` and publish it atomically.

    Nothing appears at ``destination`` until commit(); leaving the context without
    committing removes the temp file.
    """

    def __init__(self, destination: Path, mode_source: Path | None = None) -> None:
        self.destination = destination
        self.mode_source = mode_source
        self.temp_path: Path | None = None
        self._file: BinaryIO | None = None

    def __enter__(self) -> "StagedOutput":
        fd, temp_name = tempfile.mkstemp(dir=self.destination.parent, prefix=f".{self.destination.name}.", suffix=STAGED_SUFFIX)
        self.temp_path = Path(temp_name)
        self._file = os.fdopen(fd, "wb")
        return self

    def __exit__(self, *args: object) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        if self.temp_path is not None:
            self.temp_path.unlink(missing_ok=True)
            self.temp_path = None

    def write(self, chunk: bytes) -> None:
        if self._file is None:
            raise CombineError(f"Output for {self.destination} is not open")
        self._file.write(chunk)

    def commit(self) -> None:
        if self._file is None or self.temp_path is None:
            raise CombineError(f"Output for {self.destination} is not open")
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()
        self._file = None
        if self.mode_source is not None:
            shutil.copymode(self.mode_source, self.temp_path)
        os.replace(self.temp_path, self.destination)
        self.temp_path = None


def _is_own_output(path: Path) -> bool:
    """Return True for merged outputs and staged temp files written by this tool."""
    name = path.name
    return name.endswith(MERGED_SUFFIX) or (name.startswith(".") and name.endswith(STAGED_SUFFIX))


def discover_files(root: Path, writer: _Writer) -> list[FileHandle]:
    """Return every regular file below root with its size, in sorted path order.

    Entries whose metadata cannot be read are reported and dropped. Outputs of
    earlier runs are not candidates, and a file reached twice through a
    symlinked directory is only listed once.
    """
    handles: list[FileHandle] = []
    seen: set[Path] = set()
    for candidate in sorted(root.rglob("*")):
        if _is_own_output(candidate):
            continue
        try:
            if candidate.is_symlink() or not candidate.is_file():
                continue
            resolved = candidate.resolve()
            if resolved in seen:
                continue
            size = candidate.stat().st_size
        except OSError as exc:
            _report_discovery_error(writer, DiscoveryError(f"Cannot read metadata for {candidate}: {exc}"))
            continue
        seen.add(resolved)
        handles.append(FileHandle(candidate, size))
    return handles


def group_files(handles: Iterable[FileHandle], min_size: int = MIN_FILE_SIZE) -> dict[GroupKey, list[FileHandle]]:
    """Partition files larger than min_size by (basename, size), keeping input order."""
    groups: dict[GroupKey, list[FileHandle]] = {}
    for handle in handles:
        if handle.size <= min_size:
            continue
        groups.setdefault(handle.key, []).append(handle)
    return groups


def find_conflict(chunks: Sequence[bytes], base_offset: int = 0) -> Conflict | None:
    """Return the lowest offset where two chunks hold different non-zero bytes.

    All chunks must have the same length. Each chunk is treated as one big
    integer; its non-zero mask comes from ``bytes.translate`` so the comparison
    runs at C speed instead of byte by byte.
    """
    if not chunks:
        return None
    merged = 0
    merged_mask = 0
    clashes = 0
    for chunk in chunks:
        value = int.from_bytes(chunk, "big")
        mask = int.from_bytes(chunk.translate(_NONZERO_TABLE), "big")
        # where both sides are non-zero, merged still holds the single value seen so far
        clashes |= (merged ^ value) & merged_mask & mask
        merged |= value
        merged_mask |= mask
    if not clashes:
        return None

    length = len(chunks[0])
    clash_bytes = clashes.to_bytes(length, "big")
    index = length - len(clash_bytes.lstrip(b"\x00"))
    values = tuple(sorted({chunk[index] for chunk in chunks if chunk[index]}))
    return Conflict(base_offset + index, values)


def or_chunks(chunks: Sequence[bytes]) -> bytes:
    """Return the byte-wise OR of equally sized chunks."""
    if not chunks:
        return b""
    merged = 0
    for chunk in chunks:
        merged |= int.from_bytes(chunk, "big")
    return merged.to_bytes(len(chunks[0]), "big")


@dataclass(frozen=True)
class GroupClassification:
    """Result of the check-and-classify pass over one group."""

    complete: list[bool]
    unchanged: set[Path]  # existing outputs already equal to the merge

    @property
    def needs_write(self) -> bool:
        return not all(self.complete)


def classify_members(
    handles: Sequence[FileHandle],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    existing_outputs: Sequence[FileHandle] = (),
    context: _RunContext | None = None,
) -> GroupClassification:
    """Check consistency and classify every member against the merge in one pass.

    Args:
        handles: Group members, all of the same size
        chunk_size: Lock-step read size
        existing_outputs: Previously written outputs to compare against the merge
        context: Run context for progress reporting

    Returns:
        GroupClassification: Which members already equal the merge, and which
        existing outputs would not change

    Raises:
        ConsistencyConflictError: If two members disagree on a non-zero byte
        SizeMismatchError: If any file changed size since discovery
        OSError: On read failures

    """
    size = handles[0].size
    complete = [True] * len(handles)
    matching = [True] * len(existing_outputs)
    paths = [handle.path for handle in handles]

    with ExitStack() as stack:
        readers = [stack.enter_context(ChunkReader(handle, chunk_size)) for handle in handles]
        witnesses = [stack.enter_context(ChunkReader(output, chunk_size)) for output in existing_outputs]
        for offset in range(0, size, chunk_size):
            chunks = [reader.read_chunk() for reader in readers]
            conflict = find_conflict(chunks, offset)
            if conflict is not None:
                raise ConsistencyConflictError(conflict, paths)
            merged = or_chunks(chunks)
            for i, chunk in enumerate(chunks):
                if complete[i] and chunk != merged:
                    complete[i] = False
            for i, witness in enumerate(witnesses):
                if witness.read_chunk() != merged:
                    matching[i] = False
            if context is not None:
                context.advance(len(merged))

    unchanged = {output.path for output, same in zip(existing_outputs, matching) if same}
    return GroupClassification(complete=complete, unchanged=unchanged)


def write_merged(
    handles: Sequence[FileHandle],
    outputs: Sequence[StagedOutput],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    context: _RunContext | None = None,
) -> None:
    """Stream the OR of all members into every staged output.

    Consistency is re-checked on the way so a member modified since the
    classification pass cannot slip a conflicting byte into the result.
    """
    size = handles[0].size
    paths = [handle.path for handle in handles]

    with ExitStack() as stack:
        readers = [stack.enter_context(ChunkReader(handle, chunk_size)) for handle in handles]
        for offset in range(0, size, chunk_size):
            chunks = [reader.read_chunk() for reader in readers]
            conflict = find_conflict(chunks, offset)
            if conflict is not None:
                raise ConsistencyConflictError(conflict, paths)
            merged = or_chunks(chunks)
            for output in outputs:
                output.write(merged)
            if context is not None:
                context.advance(len(merged))


def _existing_outputs(handles: Sequence[FileHandle]) -> list[FileHandle]:
    """Return ``.merged`` siblings left by an earlier run that could be unchanged."""
    outputs: list[FileHandle] = []
    for handle in handles:
        candidate = merged_path(handle.path)
        try:
            if candidate.is_symlink() or not candidate.is_file():
                continue
            if candidate.stat().st_size != handle.size:
                continue
        except OSError:
            continue
        outputs.append(FileHandle(candidate, handle.size))
    return outputs


def _failure_outcome(exc: Exception) -> Outcome:
    return Outcome.SKIPPED if isinstance(exc, ConsistencyConflictError) else Outcome.ERROR


def process_group(key: GroupKey, handles: Sequence[FileHandle], context: _RunContext) -> GroupResult:
    """Check, merge and write out one group. Group-level failures are reported, not raised."""
    options = context.options
    if len(handles) < 2:
        if options.verbose:
            context.report(f"Skipping {key.basename} ({human_readable_size(key.size)}): too few copies")
        return GroupResult(key, inert=True)

    context.show(key)
    existing = [] if options.replace else _existing_outputs(handles)
    try:
        classification = classify_members(handles, options.chunk_size, existing, context)
    except (CombineError, OSError) as exc:
        _report_group_failure(context, key, handles, exc)
        records = [OutcomeRecord(handle.path, _failure_outcome(exc), detail=str(exc)) for handle in handles]
        return GroupResult(key, records, error=exc)

    records: list[OutcomeRecord] = []
    pending: list[tuple[FileHandle, Path]] = []
    for handle, is_complete in zip(handles, classification.complete):
        if is_complete:
            context.report(f"Already complete: {handle.path}")
            records.append(OutcomeRecord(handle.path, Outcome.COMPLETE))
            continue
        destination = handle.path if options.replace else merged_path(handle.path)
        if destination in classification.unchanged:
            context.report(f"Up to date: {destination}")
            records.append(OutcomeRecord(handle.path, Outcome.UNCHANGED, destination))
            continue
        pending.append((handle, destination))

    if not pending:
        return GroupResult(key, records)

    if options.dry_run:
        for handle, destination in pending:
            context.report(f"[DRY RUN] Would write merged content to: {destination}")
            records.append(OutcomeRecord(handle.path, Outcome.UPDATED, destination, detail="dry run"))
        return GroupResult(key, records)

    context.extend(key.size)
    committed: set[Path] = set()
    try:
        with ExitStack() as stack:
            outputs = [stack.enter_context(StagedOutput(destination, mode_source=handle.path)) for handle, destination in pending]
            write_merged(handles, outputs, options.chunk_size, context)
            for (handle, destination), output in zip(pending, outputs):
                output.commit()
                committed.add(handle.path)
                records.append(OutcomeRecord(handle.path, Outcome.UPDATED, destination))
                context.report(f"{'Replaced' if options.replace else 'Wrote'} merged file: {destination}")
    except (CombineError, OSError) as exc:
        _report_group_failure(context, key, handles, exc)
        for handle, destination in pending:
            if handle.path not in committed:
                records.append(OutcomeRecord(handle.path, _failure_outcome(exc), destination, detail=str(exc)))
        return GroupResult(key, records, error=exc)

    return GroupResult(key, records)


def _process_group_safely(key: GroupKey, handles: Sequence[FileHandle], context: _RunContext) -> GroupResult:
    try:
        return process_group(key, handles, context)
    except Exception as exc:
        context.report(f"\nUnexpected error processing group {key.basename}: {exc}")
        records = [OutcomeRecord(handle.path, Outcome.ERROR, detail=str(exc)) for handle in handles]
        return GroupResult(key, records, error=exc)


def _run_groups(groups: dict[GroupKey, list[FileHandle]], context: _RunContext) -> list[GroupResult]:
    items = list(groups.items())
    if context.options.workers <= 1 or len(items) <= 1:
        return [_process_group_safely(key, handles, context) for key, handles in items]

    results: list[GroupResult | None] = [None] * len(items)
    with ThreadPoolExecutor(max_workers=context.options.workers, thread_name_prefix="combine") as executor:
        futures = {executor.submit(_process_group_safely, key, handles, context): index for index, (key, handles) in enumerate(items)}
        for future in as_completed(futures):
            results[futures[future]] = future.result()
    return [result for result in results if result is not None]


def _validate_options(options: CombineOptions) -> None:
    if options.chunk_size <= 0:
        raise CombineError(f"Chunk size must be positive, got {options.chunk_size}")
    if options.workers <= 0:
        raise CombineError(f"Worker count must be positive, got {options.workers}")
    if options.min_size < 0:
        raise CombineError(f"Minimum size must not be negative, got {options.min_size}")


def combine_torrents(root: StrPath, options: CombineOptions | None = None) -> CombineSummary:
    """Combine every group of partial copies found below root.

    Args:
        root: Directory to scan recursively
        options: Combine options (if None, uses defaults)

    Returns:
        CombineSummary: Per-group and per-file outcomes

    Raises:
        FatalStartupError: If root is missing or not a directory
        CombineError: If the options are invalid

    """
    if options is None:
        options = CombineOptions()
    _validate_options(options)

    root_path = Path(root)
    if not root_path.exists():
        raise FatalStartupError(f"Root directory not found: {root}")
    if not root_path.is_dir():
        raise FatalStartupError(f"Root path is not a directory: {root}")

    plain = _PlainWriter()
    groups = group_files(discover_files(root_path, plain), options.min_size)
    total = sum(key.size for key, handles in groups.items() if len(handles) >= 2)

    if options.no_progress:
        pbar = SimpleProgress(total)
    else:
        pbar = tqdm(
            total=total,
            unit="B",
            unit_scale=True,
            unit_divisor=1024,
            desc="Combining",
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}{postfix}]",
        )

    with pbar:
        context = _RunContext(options=options, pbar=pbar, writer=_TqdmWriter(pbar))
        results = _run_groups(groups, context)
        pbar.set_postfix(file="")

    summary = CombineSummary(results)
    _report_summary(plain, summary, options)
    return summary


def _update_progress_postfix(pbar: _ProgressBar, name: str) -> None:
    """Update the progress bar postfix with the current file name."""
    display_name = name
    if len(display_name) > MAX_DISPLAY_FILENAME_LENGTH:
        display_name = f"{display_name[:MAX_DISPLAY_FILENAME_LENGTH]}..."
    pbar.set_postfix(file=display_name)


def _report_discovery_error(writer: _Writer, error: DiscoveryError) -> None:
    writer.write(f"Warning: {error}")


def _report_group_failure(context: _RunContext, key: GroupKey, handles: Sequence[FileHandle], exc: Exception) -> None:
    """Report why a group was aborted, with enough context to reproduce it."""
    messages = [f"\nError: Failed to combine {key.basename} ({human_readable_size(key.size)}, {key.size} bytes)"]
    if isinstance(exc, ConsistencyConflictError):
        messages.append(f"Conflicting non-zero bytes at {exc.conflict.describe()}")
    else:
        messages.append(f"{type(exc).__name__}: {exc}")
    messages.append("Group members:")
    messages.extend(f"  - {handle.path}" for handle in handles)
    context.report(*messages)


def _report_summary(writer: _Writer, summary: CombineSummary, options: CombineOptions) -> None:
    merged = len(summary.results) - summary.groups_failed - summary.groups_inert
    updated = summary.count(Outcome.UPDATED)
    action = "would update" if options.dry_run else "updated"
    writer.write(
        f"Processed {merged + summary.groups_failed} group(s): {merged} consistent, {summary.groups_failed} failed; "
        f"{summary.count(Outcome.COMPLETE)} complete, {updated} {action}, "
        f"{summary.count(Outcome.UNCHANGED)} unchanged, {summary.count(Outcome.ERROR)} error(s)"
    )
    if summary.groups_failed:
        print(f"Warning: {summary.groups_failed} group(s) could not be combined", file=sys.stderr)
