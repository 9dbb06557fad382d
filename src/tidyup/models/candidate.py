"""Scan candidate and scan result dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class CandidateEntry:
    """Single filesystem object flagged for possible deletion.

    ``path`` is absolute for filesystem entries; container-engine resources
    use a ``docker:<kind>:<id>`` address instead.  An aggregate entry stands
    for a whole directory whose contents were not walked again because the
    scan cache still vouched for it; ``file_count`` then holds the number of
    files the cached walk found.
    """

    path: str
    size: int
    mod_time: float
    category: str
    reason: str = ""
    hash: str = ""
    file_count: int = 1
    is_aggregate: bool = False

    @property
    def is_docker(self) -> bool:
        return self.path.startswith("docker:")


@dataclass(slots=True)
class ScanResult:
    """Aggregate of candidates found by one or more category scans."""

    files: list[CandidateEntry] = field(default_factory=list)
    total_size: int = 0
    total_count: int = 0
    category: str = ""
    errors: list[str] = field(default_factory=list)

    def add(self, entry: CandidateEntry) -> None:
        """Append *entry* and update the running totals."""
        self.files.append(entry)
        self.total_size += entry.size
        self.total_count += entry.file_count

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def merge(self, other: ScanResult) -> ScanResult:
        """Return a new result holding the contents of both results.

        Files and errors are concatenated and totals summed, so the final
        totals do not depend on the order results are merged in.
        """
        category = self.category if self.category == other.category else ""
        return ScanResult(
            files=[*self.files, *other.files],
            total_size=self.total_size + other.total_size,
            total_count=self.total_count + other.total_count,
            category=category,
            errors=[*self.errors, *other.errors],
        )

    def merge_into(self, other: ScanResult) -> None:
        """In-place variant of :meth:`merge` used by the aggregation lock holders."""
        self.files.extend(other.files)
        self.total_size += other.total_size
        self.total_count += other.total_count
        self.errors.extend(other.errors)
        if self.category != other.category:
            self.category = ""

    def filter_category(self, category: str) -> ScanResult:
        """Return a result holding only *category* candidates."""
        result = ScanResult(category=category)
        for entry in self.files:
            if entry.category == category:
                result.add(entry)
        return result

    def group_by_category(self) -> dict[str, ScanResult]:
        """Split the result into one ScanResult per category."""
        groups: dict[str, ScanResult] = {}
        for entry in self.files:
            group = groups.get(entry.category)
            if group is None:
                group = groups[entry.category] = ScanResult(category=entry.category)
            group.add(entry)
        return groups


def merge_results(*results: ScanResult) -> ScanResult:
    """Merge any number of scan results into a fresh one."""
    merged = ScanResult()
    if results:
        merged.category = results[0].category
    for result in results:
        merged.merge_into(result)
    return merged


@dataclass(slots=True)
class ScanBatch:
    """A chunk of candidates delivered by the streaming scanner.

    ``final`` marks the last batch of a category; non-fatal scan errors of
    that category ride along in ``errors``.  A batch carrying an ``error``
    means the stream was aborted (cancelled or crashed) and no further
    batches follow.
    """

    files: list[CandidateEntry] = field(default_factory=list)
    category: str = ""
    error: str = ""
    final: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)

    @property
    def batch_size(self) -> int:
        return len(self.files)
