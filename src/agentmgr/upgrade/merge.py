"""
Line-oriented three-way merge.

Given the version shipped last time (base), the user's copy (local) and the
new release (incoming), a merger produces either a clean result or content
with conflict markers. Two implementations are provided:

- LineMerger: in-process merge over minimal (Myers) line diffs. Changes
  from the two sides are combined unless they touch the same base lines;
  edits on neighbouring lines merge cleanly. Inputs too far apart to diff
  raise MergeUnavailableError.
- Diff3Merger: runs GNU ``diff3 -m``. When the tool is missing or fails,
  MergeUnavailableError is raised and callers fall back to their conflict
  handling.

Binary content must never be passed to a merger.
"""

from __future__ import annotations

import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from agentmgr.errors import InvalidArgumentError, MergeUnavailableError
from agentmgr.logging import get_logger

logger = get_logger(__name__)

LOCAL_MARKER = "<<<<<<< local"
BASE_MARKER = "||||||| base"
SEPARATOR_MARKER = "======="
INCOMING_MARKER = ">>>>>>> incoming"

# Larger differences are reported as unmergeable and end up as conflicts
MAX_EDIT_DISTANCE = 2000


@dataclass(frozen=True)
class MergeResult:
    """Outcome of a three-way merge."""

    clean: bool
    content: str
    conflict_count: int = 0


@dataclass
class _Hunk:
    start: int
    end: int
    lines: list[str]
    side: str

    @property
    def is_insertion(self) -> bool:
        return self.start == self.end


@dataclass
class _Cluster:
    start: int
    end: int
    hunks: list[_Hunk] = field(default_factory=list)

    def touches(self, hunk: _Hunk) -> bool:
        # Hunks arrive sorted by start, so hunk.start >= self.start.
        if hunk.start < self.end:
            return True
        if hunk.start == self.end:
            return hunk.is_insertion or self.start == self.end
        return False

    def add(self, hunk: _Hunk) -> None:
        self.hunks.append(hunk)
        self.end = max(self.end, hunk.end)

    def sides(self) -> set[str]:
        return {h.side for h in self.hunks}


def split_lines(text: str) -> list[str]:
    """Split ``text`` into lines, keeping ``\\n`` terminators."""
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _backtrack(trace: list[list[int]], n: int, m: int) -> list[tuple[int, int]]:
    pairs: list[tuple[int, int]] = []
    x, y = n, m
    for d in range(len(trace) - 1, -1, -1):
        # trace[d] holds diagonals -d-1..d+1 as they were before round d
        v = trace[d]
        k = x - y
        if k == -d or (k != d and v[k + d] < v[k + d + 2]):
            prev_k = k + 1
        else:
            prev_k = k - 1
        prev_x = v[prev_k + d + 1]
        prev_y = prev_x - prev_k
        while x > prev_x and y > prev_y:
            x -= 1
            y -= 1
            pairs.append((x, y))
        if d > 0:
            x, y = prev_x, prev_y
    pairs.reverse()
    return pairs


def shortest_edit(a: list[str], b: list[str]) -> list[tuple[int, int]]:
    """
    Return the index pairs of lines kept by a shortest edit script from a to b.

    Myers' greedy O(ND) algorithm. The kept lines form a longest common
    subsequence, so repeated lines (closing braces, blank lines) never turn a
    single insertion into a delete plus re-insert.

    Raises:
        MergeUnavailableError: If the inputs differ by more than
            MAX_EDIT_DISTANCE lines.
    """
    n, m = len(a), len(b)
    max_d = min(n + m, MAX_EDIT_DISTANCE)
    offset = max_d + 1
    v = [0] * (2 * max_d + 3)
    trace: list[list[int]] = []
    for d in range(max_d + 1):
        trace.append(v[offset - d - 1 : offset + d + 2])
        for k in range(-d, d + 1, 2):
            if k == -d or (k != d and v[offset + k - 1] < v[offset + k + 1]):
                x = v[offset + k + 1]
            else:
                x = v[offset + k - 1] + 1
            y = x - k
            while x < n and y < m and a[x] == b[y]:
                x += 1
                y += 1
            v[offset + k] = x
            if x >= n and y >= m:
                return _backtrack(trace, n, m)
    raise MergeUnavailableError(
        f"Inputs differ by more than {MAX_EDIT_DISTANCE} lines",
        details={"base_lines": n, "other_lines": m},
    )


def _hunks(base: list[str], other: list[str], side: str) -> list[_Hunk]:
    limit = min(len(base), len(other))
    prefix = 0
    while prefix < limit and base[prefix] == other[prefix]:
        prefix += 1
    suffix = 0
    while suffix < limit - prefix and base[-1 - suffix] == other[-1 - suffix]:
        suffix += 1
    a = base[prefix : len(base) - suffix]
    b = other[prefix : len(other) - suffix]

    hunks = []
    i = j = 0
    for ai, bj in [*shortest_edit(a, b), (len(a), len(b))]:
        if ai > i or bj > j:
            hunks.append(_Hunk(prefix + i, prefix + ai, b[j:bj], side))
        i, j = ai + 1, bj + 1
    return hunks


def _apply(base: list[str], start: int, end: int, hunks: list[_Hunk]) -> list[str]:
    out: list[str] = []
    pos = start
    for hunk in hunks:
        out.extend(base[pos : hunk.start])
        out.extend(hunk.lines)
        pos = hunk.end
    out.extend(base[pos:end])
    return out


def _terminated(lines: list[str]) -> list[str]:
    if lines and not lines[-1].endswith("\n"):
        return [*lines[:-1], lines[-1] + "\n"]
    return lines


class ThreeWayMerger(ABC):
    """Abstract three-way text merger."""

    name: str = "abstract"

    @abstractmethod
    def merge(self, base: str, local: str, incoming: str) -> MergeResult:
        """
        Merge ``local`` and ``incoming`` relative to their common ``base``.

        Raises:
            MergeUnavailableError: If the merge could not be attempted.
        """


class LineMerger(ThreeWayMerger):
    """
    In-process line merger.

    Both sides are diffed against base with shortest_edit. Changes are grouped
    into clusters of base ranges; a cluster changed by one side takes that
    side's lines, a cluster changed identically by both sides takes them
    once, and anything else becomes a conflict block of the form::

        <<<<<<< local
        ...
        ||||||| base
        ...
        =======
        ...
        >>>>>>> incoming

    Example:
        >>> LineMerger().merge("A\\nB\\nC\\n", "A\\nB2\\nC\\n", "A\\nB\\nC2\\n").content
        'A\\nB2\\nC2\\n'
    """

    name = "builtin"

    def merge(self, base: str, local: str, incoming: str) -> MergeResult:
        if local == incoming:
            return MergeResult(clean=True, content=local)
        if local == base:
            return MergeResult(clean=True, content=incoming)
        if incoming == base:
            return MergeResult(clean=True, content=local)

        base_lines = split_lines(base)
        hunks = _hunks(base_lines, split_lines(local), "local") + _hunks(
            base_lines, split_lines(incoming), "incoming"
        )
        hunks.sort(key=lambda h: (h.start, h.end, h.side))

        clusters: list[_Cluster] = []
        for hunk in hunks:
            if clusters and clusters[-1].touches(hunk):
                clusters[-1].add(hunk)
            else:
                cluster = _Cluster(hunk.start, hunk.end)
                cluster.add(hunk)
                clusters.append(cluster)

        out: list[str] = []
        conflicts = 0
        pos = 0
        for cluster in clusters:
            out.extend(base_lines[pos : cluster.start])
            pos = cluster.end

            if len(cluster.sides()) == 1:
                out.extend(_apply(base_lines, cluster.start, cluster.end, cluster.hunks))
                continue

            ours = _apply(
                base_lines,
                cluster.start,
                cluster.end,
                [h for h in cluster.hunks if h.side == "local"],
            )
            theirs = _apply(
                base_lines,
                cluster.start,
                cluster.end,
                [h for h in cluster.hunks if h.side == "incoming"],
            )
            if ours == theirs:
                out.extend(ours)
                continue

            conflicts += 1
            out.append(LOCAL_MARKER + "\n")
            out.extend(_terminated(ours))
            out.append(BASE_MARKER + "\n")
            out.extend(_terminated(base_lines[cluster.start : cluster.end]))
            out.append(SEPARATOR_MARKER + "\n")
            out.extend(_terminated(theirs))
            out.append(INCOMING_MARKER + "\n")

        out.extend(base_lines[pos:])
        return MergeResult(clean=conflicts == 0, content="".join(out), conflict_count=conflicts)


class Diff3Merger(ThreeWayMerger):
    """
    Merger backed by GNU ``diff3 -m``.

    Exit status 0 means a clean merge, 1 means conflicts are present in the
    output, anything else is an error.
    """

    name = "diff3"

    def __init__(self, executable: str = "diff3", timeout: float = 30.0) -> None:
        self.executable = executable
        self.timeout = timeout

    def is_available(self) -> bool:
        """Whether the diff3 executable can be found on PATH."""
        return shutil.which(self.executable) is not None

    def merge(self, base: str, local: str, incoming: str) -> MergeResult:
        with tempfile.TemporaryDirectory(prefix="agentmgr-merge-") as tmp:
            tmp_dir = Path(tmp)
            paths = {}
            for label, content in (("local", local), ("base", base), ("incoming", incoming)):
                path = tmp_dir / label
                path.write_text(content, encoding="utf-8")
                paths[label] = str(path)

            try:
                proc = subprocess.run(
                    [
                        self.executable,
                        "-m",
                        "-L", "local",
                        "-L", "base",
                        "-L", "incoming",
                        paths["local"],
                        paths["base"],
                        paths["incoming"],
                    ],
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
            except FileNotFoundError as e:
                raise MergeUnavailableError(
                    f"{self.executable} is not installed",
                    details={"executable": self.executable},
                ) from e
            except subprocess.TimeoutExpired as e:
                raise MergeUnavailableError(
                    f"{self.executable} timed out after {self.timeout}s",
                    details={"executable": self.executable},
                ) from e

        if proc.returncode == 0:
            return MergeResult(clean=True, content=proc.stdout)
        if proc.returncode == 1:
            conflicts = proc.stdout.count(LOCAL_MARKER)
            return MergeResult(clean=False, content=proc.stdout, conflict_count=conflicts)

        raise MergeUnavailableError(
            f"{self.executable} failed: {proc.stderr.strip()}",
            details={"executable": self.executable, "returncode": proc.returncode},
        )


def get_merger(backend: str) -> ThreeWayMerger:
    """
    Return the merger for a configured backend name.

    Raises:
        InvalidArgumentError: If the backend is unknown.
    """
    if backend == "builtin":
        return LineMerger()
    if backend == "diff3":
        return Diff3Merger()
    raise InvalidArgumentError(
        f"Unknown merge backend: {backend}",
        details={"backend": backend},
    )
