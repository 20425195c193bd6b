#!/usr/bin/env python3
"""
Repository Revision Statistics - revstats (v0.3.0)

Walks the commit history of a git repository and aggregates it into small,
deduplicated statistics:

- summary: number of commits, authors, distinct tracked paths and distinct
  file-content revisions
- hotspot: per path, the number of distinct contents it has had across history
- cloc: lines of code per language, delegated to the external `cloc` tool

Revision specifiers follow git conventions (`v1.0`, `^main`, `a..b`, `a...b`)
and commits can be narrowed by message pattern and commit date. Results are
rendered as CSV, JSON or a single-page D3 chart.

Version: 0.3.0
"""

import csv
import html
import io
import json
import logging
import os
import re
import subprocess
import sys
import time
import traceback
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum, Flag, auto
from functools import lru_cache
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
)

import click
import yaml
from colorama import Fore, Style, just_fix_windows_console
from tqdm import tqdm


VERSION = "0.3.0"
DEFAULT_TREE_CACHE_SIZE = 4096

logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================


class RevStatsError(Exception):
    """Base class for failures that abort an analysis."""


class ResolutionError(RevStatsError):
    """Raised when a revision specifier cannot be resolved to commits."""

    def __init__(self, specifier: str, reason: str = ""):
        self.specifier = specifier
        message = f"Cannot resolve revision '{specifier}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class RepositoryAccessError(RevStatsError):
    """Raised when the repository cannot be opened or an object cannot be read."""


class FilterConfigError(RevStatsError):
    """Raised for invalid commit filter settings, e.g. a malformed date."""


# ============================================================================
# DATA MODEL
# ============================================================================


class EntryKind(Enum):
    FILE = "file"
    SUBTREE = "subtree"
    OTHER = "other"


class TreeEntry(NamedTuple):
    name: str
    kind: EntryKind
    oid: str


class EntryObservation(NamedTuple):
    """One file entry seen in one commit: full path from the root and blob id."""

    path: str
    blob_id: str


@dataclass(frozen=True)
class Commit:
    """
    Immutable view of a commit object.

    `author` and `message` are None when the stored bytes are not valid UTF-8.
    `timestamp` is the committer time in seconds since the epoch.
    """

    id: str
    tree: str
    parents: Tuple[str, ...] = ()
    author: Optional[str] = None
    message: Optional[str] = None
    timestamp: int = 0
    offset_minutes: int = 0


class RevparseMode(Flag):
    SINGLE = auto()
    RANGE = auto()
    MERGE_BASE = auto()


@dataclass(frozen=True)
class RevSpec:
    """A parsed revision specifier: one commit, or a `from..to` range."""

    mode: RevparseMode
    from_id: str
    to_id: Optional[str] = None


# ============================================================================
# GIT REPOSITORY HANDLE
# ============================================================================


def run_git(args: Sequence[str], cwd: str) -> str:
    """Execute a git command in `cwd` and return its standard output.

    Raises:
        RepositoryAccessError: If the command fails or git is not installed
    """
    cmd = ["git", "-C", cwd] + list(args)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=True,
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        error_msg = e.stderr.strip() if e.stderr else str(e)
        raise RepositoryAccessError(
            f"Git command failed: {' '.join(cmd)}\n{error_msg}"
        ) from e
    except FileNotFoundError:
        raise RepositoryAccessError("Git is not installed or not found in PATH") from None


_SIGNATURE_RE = re.compile(
    rb"^(?P<name>.*?) <(?P<email>[^>]*)> (?P<time>-?\d+) (?P<offset>[+-]\d{4})$"
)


def _decode_text(raw: bytes) -> Optional[str]:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _parse_offset(raw: bytes) -> int:
    sign = -1 if raw.startswith(b"-") else 1
    return sign * (int(raw[1:3]) * 60 + int(raw[3:5]))


def parse_commit(oid: str, raw: bytes) -> Commit:
    """Build a Commit from a raw commit object as stored by git."""
    header, _, message = raw.partition(b"\n\n")
    tree = None
    parents = []
    author = None
    timestamp = 0
    offset = 0

    for line in header.split(b"\n"):
        # continuation lines of multi-line headers such as gpgsig
        if line.startswith(b" "):
            continue
        key, _, value = line.partition(b" ")
        if key == b"tree":
            tree = value.decode("ascii")
        elif key == b"parent":
            parents.append(value.decode("ascii"))
        elif key == b"author":
            match = _SIGNATURE_RE.match(value)
            if match:
                author = _decode_text(match.group("name"))
        elif key == b"committer":
            match = _SIGNATURE_RE.match(value)
            if match:
                timestamp = int(match.group("time"))
                offset = _parse_offset(match.group("offset"))

    if tree is None:
        raise RepositoryAccessError(f"Commit {oid} has no tree")

    return Commit(
        id=oid,
        tree=tree,
        parents=tuple(parents),
        author=author,
        message=_decode_text(message),
        timestamp=timestamp,
        offset_minutes=offset,
    )


def entry_kind(mode: bytes) -> EntryKind:
    """Classify a tree entry by its file mode."""
    if mode in (b"40000", b"040000"):
        return EntryKind.SUBTREE
    # regular and executable files and symlinks are all blob objects
    if mode.startswith(b"100") or mode == b"120000":
        return EntryKind.FILE
    return EntryKind.OTHER


def parse_tree(raw: bytes, hash_size: int) -> Tuple[TreeEntry, ...]:
    """Split a raw tree object into its entries, keeping git's entry order."""
    entries = []
    pos = 0
    while pos < len(raw):
        space = raw.index(b" ", pos)
        nul = raw.index(b"\0", space)
        end = nul + 1 + hash_size
        if end > len(raw):
            raise ValueError("truncated tree entry")
        entries.append(
            TreeEntry(
                name=raw[space + 1 : nul].decode("utf-8", "surrogateescape"),
                kind=entry_kind(raw[pos:space]),
                oid=raw[nul + 1 : end].hex(),
            )
        )
        pos = end
    return tuple(entries)


class GitObjectReader:
    """Reads raw objects through one long-lived `git cat-file --batch` process."""

    def __init__(self, repo_path: str):
        self.repo_path = repo_path
        self.process: Optional[subprocess.Popen] = None

    def _ensure_started(self) -> subprocess.Popen:
        if self.process is None:
            try:
                self.process = subprocess.Popen(
                    ["git", "-C", self.repo_path, "cat-file", "--batch"],
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.DEVNULL,
                )
            except FileNotFoundError:
                raise RepositoryAccessError(
                    "Git is not installed or not found in PATH"
                ) from None
        return self.process

    def read(self, oid: str, expected_type: str) -> bytes:
        """Return the body of object `oid`, which must be of `expected_type`."""
        process = self._ensure_started()
        try:
            process.stdin.write(oid.encode("ascii") + b"\n")
            process.stdin.flush()
            header = process.stdout.readline()
        except (OSError, ValueError) as e:
            raise RepositoryAccessError(f"Failed to read object {oid}: {e}") from e

        if not header:
            raise RepositoryAccessError(
                f"git cat-file terminated while reading object {oid}"
            )
        parts = header.split()
        if len(parts) != 3:
            raise RepositoryAccessError(f"Object {oid} not found in repository")

        obj_type = parts[1].decode("ascii")
        size = int(parts[2])
        data = process.stdout.read(size)
        process.stdout.read(1)  # trailing newline

        if len(data) != size:
            raise RepositoryAccessError(f"Short read for object {oid}")
        if obj_type != expected_type:
            raise RepositoryAccessError(
                f"Object {oid} is a {obj_type}, expected a {expected_type}"
            )
        return data

    def close(self):
        if self.process is None:
            return
        self.process.stdin.close()
        self.process.wait()
        self.process.stdout.close()
        self.process = None


class GitRepository:
    """
    Read-only handle on a git repository, driven through the git executable.

    Provides revision resolution, merge-base computation, history traversal
    and commit/tree lookup. Tree listings are memoised for the lifetime of
    the handle since the same subtrees recur across most commits.
    """

    def __init__(
        self,
        path: str,
        git_dir: str,
        tree_cache_size: int = DEFAULT_TREE_CACHE_SIZE,
    ):
        self.path = path
        self.git_dir = git_dir
        self._reader = GitObjectReader(path)
        self.tree_entries = lru_cache(maxsize=tree_cache_size)(self._read_tree_entries)

    @classmethod
    def open(
        cls, path: str, tree_cache_size: int = DEFAULT_TREE_CACHE_SIZE
    ) -> "GitRepository":
        path = os.path.abspath(path)
        if not os.path.isdir(path):
            raise RepositoryAccessError(f"Not a directory: {path}")
        try:
            git_dir = run_git(["rev-parse", "--git-dir"], cwd=path).strip()
        except RepositoryAccessError as e:
            raise RepositoryAccessError(f"Not a git repository: {path}") from e
        logger.debug("Opened repository %s (git dir %s)", path, git_dir)
        return cls(path, git_dir, tree_cache_size=tree_cache_size)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def close(self):
        self._reader.close()

    # -- revision resolution -------------------------------------------------

    def revparse_single(self, spec: str) -> str:
        """Resolve `spec` to the full id of the commit it names."""
        if not spec or spec.startswith("-"):
            raise ResolutionError(spec, "not a revision")
        try:
            output = run_git(
                ["rev-parse", "--verify", "--quiet", f"{spec}^{{commit}}"],
                cwd=self.path,
            )
        except RepositoryAccessError as e:
            raise ResolutionError(spec, "unknown revision") from e
        return output.strip()

    def revparse(self, spec: str) -> RevSpec:
        """Resolve a single revision or a `from..to` / `from...to` range."""
        if "..." in spec:
            left, right = spec.split("...", 1)
            mode = RevparseMode.RANGE | RevparseMode.MERGE_BASE
        elif ".." in spec:
            left, right = spec.split("..", 1)
            mode = RevparseMode.RANGE
        else:
            return RevSpec(RevparseMode.SINGLE, self.revparse_single(spec))

        if not left and not right:
            raise ResolutionError(spec, "range without endpoints")
        return RevSpec(
            mode,
            self._resolve_endpoint(spec, left or "HEAD"),
            self._resolve_endpoint(spec, right or "HEAD"),
        )

    def _resolve_endpoint(self, spec: str, endpoint: str) -> str:
        try:
            return self.revparse_single(endpoint)
        except ResolutionError as e:
            raise ResolutionError(spec, f"unknown endpoint '{endpoint}'") from e

    def merge_base(self, one: str, two: str) -> str:
        try:
            return run_git(["merge-base", one, two], cwd=self.path).strip()
        except RepositoryAccessError as e:
            raise ResolutionError(
                f"{one[:12]}...{two[:12]}", "no common ancestor"
            ) from e

    def head(self) -> Optional[str]:
        """Return the commit HEAD points to, or None on an unborn branch."""
        try:
            return self.revparse_single("HEAD")
        except ResolutionError:
            try:
                run_git(["symbolic-ref", "-q", "HEAD"], cwd=self.path)
            except RepositoryAccessError:
                raise ResolutionError("HEAD", "detached HEAD does not resolve") from None
            return None

    # -- traversal and object access -----------------------------------------

    def revwalk(self, include: Sequence[str], exclude: Sequence[str]) -> Iterator[str]:
        """
        Stream ids of commits reachable from `include` but not from `exclude`.

        The order is whatever `git rev-list` produces; it is not re-sorted.
        """
        if not include:
            return
        cmd = (
            ["git", "-C", self.path, "rev-list"]
            + list(include)
            + [f"^{oid}" for oid in exclude]
            + ["--"]
        )
        logger.debug("Walking history: %s", " ".join(cmd[3:]))
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError:
            raise RepositoryAccessError("Git is not installed or not found in PATH") from None

        try:
            for line in process.stdout:
                line = line.strip()
                if line:
                    yield line
            stderr = process.stderr.read()
            if process.wait() != 0:
                raise RepositoryAccessError(f"Git command failed: rev-list\n{stderr.strip()}")
        finally:
            if process.poll() is None:
                process.kill()
            process.wait()
            process.stdout.close()
            process.stderr.close()

    def read_commit(self, oid: str) -> Commit:
        return parse_commit(oid, self._reader.read(oid, "commit"))

    def _read_tree_entries(self, tree_id: str) -> Tuple[TreeEntry, ...]:
        raw = self._reader.read(tree_id, "tree")
        try:
            return parse_tree(raw, hash_size=len(tree_id) // 2)
        except ValueError as e:
            raise RepositoryAccessError(f"Corrupt tree object {tree_id}: {e}") from e

    def cache_info(self) -> Tuple[int, int]:
        """Return (hits, misses) of the tree listing cache."""
        info = self.tree_entries.cache_info()
        return info.hits, info.misses


# ============================================================================
# REVISION SELECTION & COMMIT FILTERING
# ============================================================================


def parse_iso_date(value: Any) -> int:
    """
    Convert a `YYYY-MM-DD` date to the unix timestamp of its UTC midnight.

    Accepts strings and `datetime.date` values (YAML config files load
    unquoted dates as such).

    Raises:
        FilterConfigError: If the value is not a plain calendar date
    """
    if isinstance(value, date) and not isinstance(value, datetime):
        day = value
    elif isinstance(value, str) and re.fullmatch(r"\d{4}-\d{2}-\d{2}", value.strip()):
        try:
            day = date.fromisoformat(value.strip())
        except ValueError as e:
            raise FilterConfigError(f"Invalid date '{value}': {e}") from e
    else:
        raise FilterConfigError(f"Invalid date '{value}': expected YYYY-MM-DD")

    midnight = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return int(midnight.timestamp())


def commit_message_matches(message: Optional[str], pattern: Optional[str]) -> bool:
    if pattern is None:
        return True
    if message is None:
        return False
    return pattern in message


def commit_timestamp_is_in_range(
    timestamp: int, before: Optional[int], after: Optional[int]
) -> bool:
    if before is not None and not timestamp < before:
        return False
    if after is not None and not timestamp > after:
        return False
    return True


@dataclass(frozen=True)
class CommitFilter:
    """Message pattern and date bounds a commit must satisfy to be analysed."""

    pattern: Optional[str] = None
    before: Optional[int] = None
    after: Optional[int] = None

    def accepts(self, commit: Commit) -> bool:
        return commit_message_matches(
            commit.message, self.pattern
        ) and commit_timestamp_is_in_range(commit.timestamp, self.before, self.after)


@dataclass
class GitArgs:
    """History selection settings shared by the history based commands."""

    after: Optional[int] = None
    before: Optional[int] = None
    commits: List[str] = field(default_factory=list)
    commit_msg_grep: Optional[str] = None

    def commit_filter(self) -> CommitFilter:
        return CommitFilter(
            pattern=self.commit_msg_grep, before=self.before, after=self.after
        )


class RevisionSelector:
    """
    Turns revision specifiers into the include/exclude seeds of a history walk.

    - `^rev` hides rev and its ancestors
    - `rev` includes rev and its ancestors
    - `a..b` includes b and hides a
    - `a...b` additionally includes the merge base of a and b before hiding a
    - no specifiers at all includes HEAD
    """

    def __init__(self, repo, specifiers: Optional[Iterable[str]] = None):
        self.repo = repo
        self.specifiers = list(specifiers or [])
        self.include: List[str] = []
        self.exclude: List[str] = []

    def resolve(self) -> "RevisionSelector":
        include, exclude = [], []

        for spec in self.specifiers:
            if spec.startswith("^"):
                target = spec[1:]
                if not target:
                    raise ResolutionError(spec, "exclusion without a target")
                try:
                    exclude.append(self.repo.revparse_single(target))
                except ResolutionError as e:
                    raise ResolutionError(spec, "unknown exclusion target") from e
                continue

            revspec = self.repo.revparse(spec)
            if RevparseMode.SINGLE in revspec.mode:
                include.append(revspec.from_id)
                continue

            include.append(revspec.to_id)
            if RevparseMode.MERGE_BASE in revspec.mode:
                try:
                    include.append(self.repo.merge_base(revspec.from_id, revspec.to_id))
                except ResolutionError as e:
                    raise ResolutionError(spec, "no merge base") from e
            exclude.append(revspec.from_id)

        if not self.specifiers:
            head = self.repo.head()
            if head is None:
                logger.warning("HEAD is unborn, there is no history to analyse")
            else:
                include.append(head)

        self.include, self.exclude = include, exclude
        logger.info(
            "Resolved %d specifier(s): %d included, %d hidden",
            len(self.specifiers),
            len(include),
            len(exclude),
        )
        return self

    def commit_ids(self) -> Iterator[str]:
        return self.repo.revwalk(self.include, self.exclude)


class CommitResult(NamedTuple):
    """One step of the commit stream: either a commit or the error that ended it."""

    commit: Optional[Commit] = None
    error: Optional[RevStatsError] = None

    def unwrap(self) -> Commit:
        if self.error is not None:
            raise self.error
        return self.commit


def _filtered_commits(
    repo, commit_ids: Iterator[str], commit_filter: CommitFilter
) -> Iterator[CommitResult]:
    try:
        for oid in commit_ids:
            commit = repo.read_commit(oid)
            if commit_filter.accepts(commit):
                yield CommitResult(commit=commit)
    except RevStatsError as e:
        yield CommitResult(error=e)


def determine_commits_to_analyse(repo, git_args: GitArgs) -> Iterator[CommitResult]:
    """
    Resolve the revision specifiers and return the lazy, filtered commit stream.

    Specifiers are resolved before this returns, so an unknown revision raises
    ResolutionError right away. Failures during the walk itself are delivered
    as a final error result.
    """
    selector = RevisionSelector(repo, git_args.commits).resolve()
    return _filtered_commits(repo, selector.commit_ids(), git_args.commit_filter())


# ============================================================================
# TREE WALKING
# ============================================================================


def walk_tree(repo, tree_id: str, prefix: str = "") -> Iterator[EntryObservation]:
    """
    Yield every file below `tree_id` in pre-order, keyed by its full path.

    Subtrees are descended into; submodule links and unknown entry kinds are
    skipped.
    """
    for entry in repo.tree_entries(tree_id):
        path = f"{prefix}{entry.name}"
        if entry.kind is EntryKind.FILE:
            yield EntryObservation(path, entry.oid)
        elif entry.kind is EntryKind.SUBTREE:
            yield from walk_tree(repo, entry.oid, f"{path}/")


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressSink:
    """Receives traversal progress. The base class ignores everything."""

    def start(self, message: str) -> None:
        pass

    def advance(self, count: int = 1) -> None:
        pass

    def finish(self, message: str = "") -> None:
        pass


class CallbackProgress(ProgressSink):
    """Forwards the running commit count to a caller supplied callable."""

    def __init__(self, callback: Callable[[int], None]):
        self.callback = callback
        self.position = 0

    def start(self, message: str) -> None:
        self.position = 0

    def advance(self, count: int = 1) -> None:
        self.position += count
        self.callback(self.position)


class ProgressReporter(ProgressSink):
    """
    Console progress and messages, all written to stderr so stdout stays
    free for the rendered statistics.
    - Colour-coded messages (colorama)
    - Commit counter while walking history (tqdm), removed when done
    """

    def __init__(
        self, quiet: bool = False, show_progress: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.show_progress = show_progress
        self.use_colors = use_colors
        self.progress_bar = None

    def _colorize(self, text: str, color: str) -> str:
        """Apply color if enabled"""
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def start(self, message: str) -> None:
        if self.quiet or not self.show_progress:
            return
        self.progress_bar = tqdm(
            total=None,
            desc=message,
            unit=" commits",
            file=sys.stderr,
            leave=False,
            bar_format="{desc}: {n_fmt:>7}",
        )

    def advance(self, count: int = 1) -> None:
        if self.progress_bar is not None:
            self.progress_bar.update(count)

    def finish(self, message: str = "") -> None:
        if self.progress_bar is None:
            return
        if message:
            self.progress_bar.set_description(message)
        self.progress_bar.close()
        self.progress_bar = None

    def error(self, message: str):
        """Display error message (always shown)"""
        print(
            self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT),
            file=sys.stderr,
        )


# ============================================================================
# AGGREGATION
# ============================================================================


@dataclass
class PerformanceMetrics:
    commits_processed: int = 0
    entries_observed: int = 0
    total_time: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0

    def to_dict(self) -> Dict:
        cache_total = self.cache_hits + self.cache_misses
        cache_hit_rate = (self.cache_hits / cache_total * 100) if cache_total > 0 else 0

        return {
            "commits_processed": self.commits_processed,
            "entries_observed": self.entries_observed,
            "total_time_seconds": round(self.total_time, 2),
            "cache_statistics": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate_percent": round(cache_hit_rate, 1),
            },
        }


@dataclass
class AnalysisContext:
    """Per-invocation collaborators of the traversal loop."""

    progress: ProgressSink = field(default_factory=ProgressSink)
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)


class StatisticsAggregator:
    """
    Base class for accumulators fed once per retained commit.

    State only grows, and `merge` is a set union, so partial aggregators
    built over disjoint commit sets can be combined without changing results.
    """

    name = "statistics"
    columns: Tuple[str, ...] = ()

    def process_commit(self, commit: Commit, observations: Iterable[EntryObservation]):
        """Process a single commit - override in subclasses"""
        pass

    def merge(self, other: "StatisticsAggregator") -> "StatisticsAggregator":
        return self

    def finalize(self) -> List[Dict[str, Any]]:
        """Return the output records - override in subclasses"""
        return []


class SummaryAggregator(StatisticsAggregator):
    """Counts commits, authors, distinct paths and distinct blob ids."""

    name = "summary"
    columns = ("statistics", "value")

    def __init__(self):
        self.commits = 0
        self.authors = set()
        self.entries = set()
        self.blobs = set()

    def process_commit(self, commit: Commit, observations: Iterable[EntryObservation]):
        self.commits += 1
        if commit.author is not None:
            self.authors.add(commit.author)
        for path, blob_id in observations:
            self.entries.add(path)
            self.blobs.add(blob_id)

    def merge(self, other: "SummaryAggregator") -> "SummaryAggregator":
        self.commits += other.commits
        self.authors |= other.authors
        self.entries |= other.entries
        self.blobs |= other.blobs
        return self

    def counts(self) -> Dict[str, int]:
        return {
            "number-of-commits": self.commits,
            "number-of-authors": len(self.authors),
            "number-of-entries": len(self.entries),
            "number-of-entries-changed": len(self.blobs),
        }

    def finalize(self) -> List[Dict[str, Any]]:
        return [
            {"statistics": name, "value": value} for name, value in self.counts().items()
        ]


class HotspotAggregator(StatisticsAggregator):
    """
    Tracks, per path, the set of distinct blob ids seen at that path.

    The size of the set is the number of different contents the file has
    had, which is used as its revision count.
    """

    name = "hotspot"
    columns = ("entry", "n-revs")

    def __init__(self):
        self.revisions: Dict[str, set] = defaultdict(set)

    def process_commit(self, commit: Commit, observations: Iterable[EntryObservation]):
        for path, blob_id in observations:
            self.revisions[path].add(blob_id)

    def merge(self, other: "HotspotAggregator") -> "HotspotAggregator":
        for path, blobs in other.revisions.items():
            self.revisions[path] |= blobs
        return self

    def finalize(self) -> List[Dict[str, Any]]:
        return [
            {"entry": path, "n-revs": len(self.revisions[path])}
            for path in sorted(self.revisions)
        ]


def rank_hotspots(
    records: List[Dict[str, Any]], top: Optional[int] = None
) -> List[Dict[str, Any]]:
    """Order hotspot records by revision count, highest first, ties by path."""
    if top is not None and top < 1:
        raise ValueError(f"top must be a positive number, got {top}")
    ranked = sorted(records, key=lambda r: (-r["n-revs"], r["entry"]))
    return ranked[:top] if top is not None else ranked


def analyse_history(
    repo,
    git_args: GitArgs,
    aggregators,
    context: Optional[AnalysisContext] = None,
):
    """
    Walk the selected history once and feed every retained commit to the
    aggregators.

    Each commit's tree is walked a single time and the same observations go to
    every aggregator. Any resolution or access failure propagates and leaves
    no usable result.

    Args:
        repo: Repository handle (GitRepository or compatible)
        git_args: Revision specifiers and commit filter settings
        aggregators: One aggregator or a list of them
        context: Progress sink and metrics; a silent context when omitted

    Returns:
        The aggregators, now holding the accumulated state
    """
    context = context or AnalysisContext()
    if isinstance(aggregators, StatisticsAggregator):
        aggregators = [aggregators]

    start = time.time()
    results = determine_commits_to_analyse(repo, git_args)

    context.progress.start("Analyse commits")
    try:
        for result in results:
            commit = result.unwrap()
            observations = list(walk_tree(repo, commit.tree))
            for aggregator in aggregators:
                aggregator.process_commit(commit, observations)

            context.metrics.commits_processed += 1
            context.metrics.entries_observed += len(observations)
            context.progress.advance()
    finally:
        context.progress.finish("Commits analysed")

    context.metrics.total_time = time.time() - start
    context.metrics.cache_hits, context.metrics.cache_misses = repo.cache_info()
    logger.info(
        "Analysed %d commits (%d entries) in %.2fs",
        context.metrics.commits_processed,
        context.metrics.entries_observed,
        context.metrics.total_time,
    )
    logger.debug("Performance metrics: %s", context.metrics.to_dict())
    return aggregators


# ============================================================================
# LINE COUNTING (delegated to cloc)
# ============================================================================


CLOC_COLUMNS = ("language", "files", "blank", "comment", "code")


def parse_cloc_csv(text: str) -> List[Dict[str, Any]]:
    """Turn `cloc --csv` output into records, keeping cloc's row order."""
    rows = [row for row in csv.reader(io.StringIO(text)) if row]
    if not rows:
        return []

    header = [cell.strip() for cell in rows[0]]
    try:
        index = {column: header.index(column) for column in CLOC_COLUMNS}
    except ValueError as e:
        raise RevStatsError(f"Unexpected cloc output header: {rows[0]}") from e

    records = []
    for row in rows[1:]:
        record = {"language": row[index["language"]]}
        for column in CLOC_COLUMNS[1:]:
            record[column] = int(row[index[column]])
        records.append(record)
    return records


def count_lines_of_code(project_dir: str) -> List[Dict[str, Any]]:
    """
    Count lines of the files tracked in `project_dir` with the cloc tool.

    Requires: cloc installed and available in PATH.
    """
    cmd = ["cloc", "--vcs=git", "--csv", "--quiet"]
    try:
        result = subprocess.run(
            cmd, cwd=project_dir, capture_output=True, text=True, timeout=300
        )
    except FileNotFoundError:
        raise RevStatsError(
            "'cloc' not found. Install cloc to count lines of code."
        ) from None
    except subprocess.TimeoutExpired as e:
        raise RevStatsError(f"cloc timed out in {project_dir}") from e

    if result.returncode != 0:
        raise RevStatsError(
            f"cloc failed in {project_dir} (exit {result.returncode}): "
            f"{result.stderr.strip()}"
        )
    return parse_cloc_csv(result.stdout)


# ============================================================================
# OUTPUT RENDERING
# ============================================================================


class OutputFormat(Enum):
    CSV = "csv"
    JSON = "json"
    D3_HTML = "D3html"


D3_HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{title}</title>
<script src="https://d3js.org/d3.v7.min.js"></script>
<style>
  body {{ font-family: sans-serif; margin: 2em; }}
  .bar {{ fill: steelblue; }}
  .bar:hover {{ fill: darkorange; }}
</style>
</head>
<body>
<h1>{title}</h1>
<div id="chart"></div>
<script id="revstats-data" type="application/json">{data}</script>
<script>
const data = JSON.parse(document.getElementById("revstats-data").textContent);
const labelKey = {label_key};
const valueKey = {value_key};
const barHeight = 20;
const margin = {{top: 20, right: 40, bottom: 30, left: 320}};
const width = 960 - margin.left - margin.right;
const height = Math.max(barHeight * data.length, barHeight);

const x = d3.scaleLinear()
    .domain([0, d3.max(data, d => d[valueKey]) || 1])
    .range([0, width]);
const y = d3.scaleBand()
    .domain(data.map(d => d[labelKey]))
    .range([0, height])
    .padding(0.1);

const svg = d3.select("#chart").append("svg")
    .attr("width", width + margin.left + margin.right)
    .attr("height", height + margin.top + margin.bottom)
  .append("g")
    .attr("transform", `translate(${{margin.left}},${{margin.top}})`);

svg.append("g").call(d3.axisLeft(y));
svg.append("g")
    .attr("transform", `translate(0,${{height}})`)
    .call(d3.axisBottom(x));

svg.selectAll(".bar").data(data).enter().append("rect")
    .attr("class", "bar")
    .attr("y", d => y(d[labelKey]))
    .attr("height", y.bandwidth())
    .attr("x", 0)
    .attr("width", d => x(d[valueKey]))
  .append("title")
    .text(d => `${{d[labelKey]}}: ${{d[valueKey]}}`);
</script>
</body>
</html>
"""


def printable(value: Any) -> Any:
    """Show undecodable bytes of a path as `\\xNN` escapes; other values pass through."""
    if isinstance(value, str):
        return value.encode("utf-8", "surrogateescape").decode("utf-8", "backslashreplace")
    return value


def _printable_records(records):
    return [{key: printable(value) for key, value in record.items()} for record in records]


def render_csv(records, columns, stream, title=""):
    writer = csv.DictWriter(stream, fieldnames=list(columns), lineterminator="\n")
    writer.writeheader()
    writer.writerows(_printable_records(records))


def render_json(records, columns, stream, title=""):
    json.dump(_printable_records(records), stream, indent=2, ensure_ascii=False)
    stream.write("\n")


def render_d3_html(records, columns, stream, title="revstats"):
    """Single HTML page charting the last column against the first."""
    data = json.dumps(_printable_records(records), ensure_ascii=False).replace(
        "</", "<\\/"
    )
    stream.write(
        D3_HTML_TEMPLATE.format(
            title=html.escape(title),
            data=data,
            label_key=json.dumps(columns[0]),
            value_key=json.dumps(columns[-1]),
        )
    )


RENDERERS = {
    OutputFormat.CSV: render_csv,
    OutputFormat.JSON: render_json,
    OutputFormat.D3_HTML: render_d3_html,
}


def write_output(
    records: List[Dict[str, Any]],
    columns: Sequence[str],
    output_format: OutputFormat,
    target: Optional[str] = None,
    title: str = "revstats",
):
    """Render records to `target`, or to stdout when no target is given."""
    renderer = RENDERERS[output_format]
    if target:
        try:
            with open(target, "w", encoding="utf-8", newline="") as f:
                renderer(records, columns, f, title)
        except OSError as e:
            raise RevStatsError(f"Cannot write output to {target}: {e}") from e
    else:
        renderer(records, columns, sys.stdout, title)


# ============================================================================
# CONFIGURATION
# ============================================================================


CONFIG_FILE_NAMES = [".revstats.yaml", ".revstats.yml", ".revstats.json"]

DEFAULTS = {
    "format": OutputFormat.CSV.value,
    "output": None,
    "progress": False,
    "verbose": 0,
    "no_color": False,
    "grep": None,
    "before": None,
    "after": None,
    "commits": [],
    "top": None,
    "tree_cache_size": DEFAULT_TREE_CACHE_SIZE,
}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from a YAML or JSON file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: For unsupported extensions or non-mapping content
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration must be a mapping: {config_path}")
    return data


def find_config_file(project_dir: str) -> Optional[str]:
    """
    Auto-discover a configuration file in the project or current directory.
    Searches for: .revstats.yaml, .revstats.yml, .revstats.json
    """
    for search_dir in [project_dir, os.getcwd()]:
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        project_dir: str,
    ):
        self.cli = {}
        self.config = {}
        self.config_path = config_path
        self.update(cli_args)

        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(project_dir)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_path = auto_path
                except (OSError, ValueError, yaml.YAMLError) as e:
                    print(
                        f"Warning: Found config file but failed to load: {e}",
                        file=sys.stderr,
                    )

        # Normalize config keys (kebab-case to snake_case)
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

    def update(self, cli_args: Dict[str, Any]):
        """Add command line values; None means "not given"."""
        self.cli.update({k: v for k, v in cli_args.items() if v is not None})

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in DEFAULTS:
            return DEFAULTS[key]
        return default

    def positive_int(self, key: str) -> Optional[int]:
        """Resolve `key` as a positive integer; None stays None.

        Raises:
            RevStatsError: If the value is not a whole number of at least 1
        """
        value = self.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise RevStatsError(f"Invalid {key}: {value!r} is not a positive integer")
        try:
            number = int(value)
        except ValueError:
            raise RevStatsError(
                f"Invalid {key}: {value!r} is not a positive integer"
            ) from None
        if number < 1:
            raise RevStatsError(f"Invalid {key}: {value!r} is not a positive integer")
        return number

    def as_dict(self) -> Dict[str, Any]:
        keys = sorted(set(DEFAULTS) | set(self.config) | set(self.cli))
        return {key: self.get(key) for key in keys}

    def git_args(self) -> GitArgs:
        """Build history selection settings from the resolved values."""
        before = self.get("before")
        after = self.get("after")
        commits = self.get("commits") or []
        if isinstance(commits, str):
            commits = [commits]
        return GitArgs(
            before=parse_iso_date(before) if before is not None else None,
            after=parse_iso_date(after) if after is not None else None,
            commits=[str(c) for c in commits],
            commit_msg_grep=self.get("grep"),
        )


# ============================================================================
# CLI INTERFACE
# ============================================================================


def setup_logging(verbosity: int):
    """0: errors only, 1: warnings, 2: info, 3 or more: debug. Always stderr."""
    levels = {1: logging.WARNING, 2: logging.INFO, 3: logging.DEBUG}
    logging.basicConfig(
        level=levels.get(min(verbosity, 3), logging.ERROR),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )


@dataclass
class CommonArgs:
    project_dir: str
    format: OutputFormat
    output: Optional[str]
    verbose: int
    resolver: ConfigResolver
    reporter: ProgressReporter

    def open_repository(self) -> GitRepository:
        return GitRepository.open(
            self.project_dir,
            tree_cache_size=self.resolver.positive_int("tree_cache_size"),
        )

    def emit(self, records, columns, title: str):
        write_output(records, columns, self.format, self.output, title=title)
        if self.output:
            logger.info("Wrote %d records to %s", len(records), self.output)


@contextmanager
def reported_errors(common: CommonArgs):
    """Report analysis failures and exit without writing any output."""
    try:
        yield
    except RevStatsError as e:
        common.reporter.error(str(e))
        if common.verbose >= 3:
            traceback.print_exc()
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n⚠️  Interrupted", file=sys.stderr)
        sys.exit(130)


def _validate_date_option(ctx, param, value):
    if value is None:
        return None
    try:
        parse_iso_date(value)
    except FilterConfigError as e:
        raise click.BadParameter(str(e)) from e
    return value


def git_common_options(command):
    """Revision and filter options shared by the history based commands."""
    command = click.option(
        "-a",
        "--after",
        callback=_validate_date_option,
        help="Only consider commits after the given date in the form YYYY-MM-DD",
    )(command)
    command = click.option(
        "-b",
        "--before",
        callback=_validate_date_option,
        help="Only consider commits before the given date in the form YYYY-MM-DD",
    )(command)
    command = click.option(
        "--grep", "pattern", help="Only consider commits whose message contains PATTERN"
    )(command)
    command = click.argument("commits", nargs=-1)(command)
    return command


def _history_args(common: CommonArgs, commits, pattern, before, after) -> GitArgs:
    common.resolver.update(
        {
            "commits": list(commits) or None,
            "grep": pattern,
            "before": before,
            "after": after,
        }
    )
    return common.resolver.git_args()


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Verbosity on stderr: -v warnings, -vv info, -vvv debug",
)
@click.option(
    "-C",
    "--project-dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Directory of the git repository (default: current directory)",
)
@click.option("-p", "--progress", is_flag=True, default=None, help="Show progress")
@click.option(
    "-f",
    "--format",
    "output_format",
    type=click.Choice([f.value for f in OutputFormat]),
    help="Output format (default: csv)",
)
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False),
    help="Write the output to a file instead of stdout",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.version_option(version=VERSION)
@click.pass_context
def main(ctx, verbose, project_dir, progress, output_format, output, config_path, no_color):
    """Statistics about the commit history of a git repository."""
    project_dir = project_dir or os.getcwd()
    cli_args = {
        "verbose": verbose or None,
        "progress": progress,
        "format": output_format,
        "output": output,
        "no_color": no_color,
    }

    try:
        resolver = ConfigResolver(cli_args, config_path, project_dir)
        fmt = OutputFormat(resolver.get("format"))
    except (OSError, ValueError, yaml.YAMLError) as e:
        ProgressReporter(use_colors=not no_color).error(f"Invalid configuration: {e}")
        sys.exit(1)

    verbosity = int(resolver.get("verbose") or 0)
    setup_logging(verbosity)
    use_colors = not resolver.get("no_color")
    if use_colors:
        just_fix_windows_console()
    if resolver.config_path:
        logger.info("Using configuration: %s", resolver.config_path)

    show_progress = bool(resolver.get("progress"))
    ctx.obj = CommonArgs(
        project_dir=project_dir,
        format=fmt,
        output=resolver.get("output"),
        verbose=verbosity,
        resolver=resolver,
        reporter=ProgressReporter(show_progress=show_progress, use_colors=use_colors),
    )


@main.command()
@git_common_options
@click.pass_obj
def summary(common: CommonArgs, commits, pattern, before, after):
    """Git repository summary."""
    with reported_errors(common):
        git_args = _history_args(common, commits, pattern, before, after)
        aggregator = SummaryAggregator()
        with common.open_repository() as repo:
            analyse_history(
                repo, git_args, aggregator, AnalysisContext(progress=common.reporter)
            )
        common.emit(aggregator.finalize(), aggregator.columns, "Repository summary")


@main.command()
@git_common_options
@click.option(
    "--top",
    type=click.IntRange(min=1),
    help="Only the N paths with the most revisions, highest first",
)
@click.pass_obj
def hotspot(common: CommonArgs, commits, pattern, before, after, top):
    """Determine hotspots: distinct revisions per file."""
    with reported_errors(common):
        git_args = _history_args(common, commits, pattern, before, after)
        common.resolver.update({"top": top})
        top = common.resolver.positive_int("top")

        aggregator = HotspotAggregator()
        with common.open_repository() as repo:
            analyse_history(
                repo, git_args, aggregator, AnalysisContext(progress=common.reporter)
            )

        records = aggregator.finalize()
        if top is not None:
            records = rank_hotspots(records, top)
        common.emit(records, aggregator.columns, "Hotspots")


main.add_command(hotspot, name="revisions")


@main.command()
@click.pass_obj
def cloc(common: CommonArgs):
    """Count lines of code, comments and empty lines."""
    with reported_errors(common):
        logger.info("Run cloc - count lines of code")
        records = count_lines_of_code(common.project_dir)
        common.emit(records, CLOC_COLUMNS, "Lines of code")


@main.command()
@click.pass_obj
def config(common: CommonArgs):
    """Show the effective configuration."""
    click.echo(yaml.safe_dump(common.resolver.as_dict(), sort_keys=True), nl=False)


if __name__ == "__main__":
    main()
