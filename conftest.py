import os
import subprocess

import pytest

from revstats import (
    Commit,
    EntryKind,
    ProgressReporter,
    RepositoryAccessError,
    ResolutionError,
    RevparseMode,
    RevSpec,
    TreeEntry,
)


class FakeRepository:
    """In-memory stand-in for GitRepository, keyed by short readable ids."""

    def __init__(self, commits, trees, head="C"):
        self.commits = {c.id: c for c in commits}
        self.trees = trees
        self.head_id = head
        self.broken = set()
        self.tree_reads = 0

    def revparse_single(self, spec):
        if spec == "HEAD" and self.head_id:
            return self.head_id
        if spec not in self.commits:
            raise ResolutionError(spec, "unknown revision")
        return spec

    def revparse(self, spec):
        for separator, mode in (
            ("...", RevparseMode.RANGE | RevparseMode.MERGE_BASE),
            ("..", RevparseMode.RANGE),
        ):
            if separator in spec:
                left, right = spec.split(separator, 1)
                return RevSpec(
                    mode,
                    self.revparse_single(left or "HEAD"),
                    self.revparse_single(right or "HEAD"),
                )
        return RevSpec(RevparseMode.SINGLE, self.revparse_single(spec))

    def _ancestors(self, ids):
        seen = set()
        stack = list(ids)
        while stack:
            oid = stack.pop()
            if oid in seen:
                continue
            seen.add(oid)
            stack.extend(self.commits[oid].parents)
        return seen

    def merge_base(self, one, two):
        common = self._ancestors([one]) & self._ancestors([two])
        if not common:
            raise ResolutionError(f"{one}...{two}", "no common ancestor")
        return max(common, key=lambda oid: self.commits[oid].timestamp)

    def head(self):
        return self.head_id

    def revwalk(self, include, exclude):
        wanted = self._ancestors(include) - self._ancestors(exclude)
        for oid in sorted(wanted, key=lambda o: -self.commits[o].timestamp):
            yield oid

    def read_commit(self, oid):
        if oid in self.broken:
            raise RepositoryAccessError(f"Object {oid} not found in repository")
        return self.commits[oid]

    def tree_entries(self, tree_id):
        self.tree_reads += 1
        return self.trees[tree_id]

    def cache_info(self):
        return 0, self.tree_reads


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def fake_repo():
    """Linear history A -> B -> C; HEAD is C.

    A: a.txt(a1)
    B: a.txt(a2), src/x.py(x1)
    C: a.txt(a1), src/x.py(x1), vendor (submodule link)
    """
    trees = {
        "tA": (TreeEntry("a.txt", EntryKind.FILE, "a1"),),
        "tSrc": (TreeEntry("x.py", EntryKind.FILE, "x1"),),
        "tB": (
            TreeEntry("a.txt", EntryKind.FILE, "a2"),
            TreeEntry("src", EntryKind.SUBTREE, "tSrc"),
        ),
        "tC": (
            TreeEntry("a.txt", EntryKind.FILE, "a1"),
            TreeEntry("src", EntryKind.SUBTREE, "tSrc"),
            TreeEntry("vendor", EntryKind.OTHER, "s1"),
        ),
    }
    commits = [
        Commit("A", "tA", (), "Alice", "initial import", 100),
        Commit("B", "tB", ("A",), "Bob", "fix parser", 200),
        Commit("C", "tC", ("B",), None, None, 300),
    ]
    return FakeRepository(commits, trees)


def _git(repo, *args, **env):
    subprocess.run(
        ["git", "-C", str(repo)] + list(args),
        check=True,
        capture_output=True,
        env=dict(os.environ, **env) if env else None,
    )


def _init(repo):
    repo.mkdir()
    _git(repo, "init")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.email", "tester@test.com")
    _git(repo, "config", "user.name", "Tester")
    _git(repo, "config", "commit.gpgsign", "false")


def _commit(repo, message, author, when, *extra):
    stamp = f"{when}T12:00:00+00:00"
    _git(
        repo,
        "commit",
        *extra,
        "-m",
        message,
        GIT_AUTHOR_NAME=author,
        GIT_AUTHOR_EMAIL=f"{author.lower()}@example.com",
        GIT_COMMITTER_NAME=author,
        GIT_COMMITTER_EMAIL=f"{author.lower()}@example.com",
        GIT_AUTHOR_DATE=stamp,
        GIT_COMMITTER_DATE=stamp,
    )


@pytest.fixture
def git_repo(tmp_path):
    """Three commits by two authors, tagged v1..v3.

    v1 (2024-01-10, Alice): add a.txt
    v2 (2024-01-20, Bob):   change a.txt, add b.txt
    v3 (2024-01-30, Alice): re-commit of the identical tree
    """
    repo = tmp_path / "repo"
    _init(repo)

    (repo / "a.txt").write_text("first\n", encoding="utf-8")
    _git(repo, "add", ".")
    _commit(repo, "add a", "Alice", "2024-01-10")
    _git(repo, "tag", "v1")

    (repo / "a.txt").write_text("second\n", encoding="utf-8")
    (repo / "b.txt").write_text("bee\n", encoding="utf-8")
    _git(repo, "add", ".")
    _commit(repo, "fix a and add b", "Bob", "2024-01-20")
    _git(repo, "tag", "v2")

    _commit(repo, "recommit", "Alice", "2024-01-30", "--allow-empty")
    _git(repo, "tag", "v3")

    return str(repo)


@pytest.fixture
def nested_repo(tmp_path):
    """One commit holding dir1/x and dir2/x with identical content."""
    repo = tmp_path / "nested"
    _init(repo)
    for directory in ("dir1", "dir2"):
        (repo / directory).mkdir()
        (repo / directory / "x").write_text("same\n", encoding="utf-8")
    _git(repo, "add", ".")
    _commit(repo, "nested files", "Alice", "2024-02-01")
    return str(repo)


@pytest.fixture
def branched_repo(tmp_path):
    """base -> main-only on main, base -> feature-only on branch feature."""
    repo = tmp_path / "branched"
    _init(repo)

    (repo / "base.txt").write_text("base\n", encoding="utf-8")
    _git(repo, "add", ".")
    _commit(repo, "base", "Alice", "2024-03-01")

    _git(repo, "checkout", "-b", "feature")
    (repo / "feature.txt").write_text("feature\n", encoding="utf-8")
    _git(repo, "add", ".")
    _commit(repo, "feature work", "Bob", "2024-03-02")

    _git(repo, "checkout", "main")
    (repo / "main.txt").write_text("main\n", encoding="utf-8")
    _git(repo, "add", ".")
    _commit(repo, "main work", "Alice", "2024-03-03")
    return str(repo)


@pytest.fixture
def empty_repo(tmp_path):
    repo = tmp_path / "empty"
    _init(repo)
    return str(repo)


@pytest.fixture
def merged_repo(branched_repo):
    """`branched_repo` with feature merged into main through a merge commit."""
    stamp = "2024-03-04T12:00:00+00:00"
    _git(
        branched_repo,
        "merge",
        "--no-ff",
        "-m",
        "merge feature",
        "feature",
        GIT_AUTHOR_NAME="Alice",
        GIT_COMMITTER_NAME="Alice",
        GIT_AUTHOR_DATE=stamp,
        GIT_COMMITTER_DATE=stamp,
    )
    return branched_repo


@pytest.fixture
def raw_name_repo(tmp_path):
    """One commit holding a file named by the byte 0xff and one named `\\xff`."""
    repo = tmp_path / "raw"
    _init(repo)
    with open(os.path.join(os.fsencode(str(repo)), b"\xff"), "w", encoding="utf-8") as f:
        f.write("raw\n")
    (repo / "\\xff").write_text("escaped\n", encoding="utf-8")
    _git(repo, "add", ".")
    _commit(repo, "odd names", "Alice", "2024-04-01")
    return str(repo)
