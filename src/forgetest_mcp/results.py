"""
Test result persistence and run-to-run comparison (regression detection).
"""
import datetime
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ResultsNotFoundError, SerializationError
from .metrics import TestMetrics

logger = logging.getLogger(__name__)

RESULTS_FILE_PREFIX = "test-results-"
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S-%f"
_RESULTS_FILE_RE = re.compile(
    r"^test-results-(?P<key>.+)-(?P<timestamp>\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}-\d{6})\.json$"
)


@dataclass(frozen=True)
class TestResult:
    """Outcome of one scenario run against one instance."""

    __test__ = False  # not a pytest test class

    test_name: str
    success: bool
    start_time: datetime.datetime
    end_time: datetime.datetime
    output: str = ""
    error: str = ""
    instance_id: str = ""
    config_hash: Optional[str] = None
    metrics: Optional[TestMetrics] = None

    def __post_init__(self):
        if self.end_time < self.start_time:
            raise ValueError(f"{self.test_name}: end_time precedes start_time")
        if not self.success and not self.error:
            object.__setattr__(self, "error", "test failed")

    @property
    def duration(self) -> float:
        """Seconds between start and end."""
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> Dict:
        return {
            "test_name": self.test_name,
            "success": self.success,
            "duration": self.duration,
            "output": self.output,
            "error": self.error,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "instance_id": self.instance_id,
            "config_hash": self.config_hash,
            "metrics": self.metrics.to_dict() if self.metrics else None,
        }

    @staticmethod
    def from_dict(data: Dict) -> "TestResult":
        metrics = data.get("metrics")
        return TestResult(
            test_name=data["test_name"],
            success=bool(data["success"]),
            start_time=datetime.datetime.fromisoformat(data["start_time"]),
            end_time=datetime.datetime.fromisoformat(data["end_time"]),
            output=data.get("output", ""),
            error=data.get("error", ""),
            instance_id=data.get("instance_id", ""),
            config_hash=data.get("config_hash"),
            metrics=TestMetrics.from_dict(metrics) if metrics else None,
        )


def _safe_key(key: str) -> str:
    """Sanitize a result key for use in a filename."""
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in key)


@dataclass
class ResultRun:
    """One persisted result set on disk."""

    key: str
    timestamp: datetime.datetime
    path: Path

    def to_dict(self) -> Dict:
        return {"key": self.key, "timestamp": self.timestamp.isoformat(), "path": str(self.path)}


class ResultStore:
    """Stores one JSON file per run: test-results-<key>-<timestamp>.json."""

    def __init__(self, results_dir: Path, logger: Optional[logging.Logger] = None):
        """Initialize result store.

        Args:
            results_dir: Directory holding result files (created on first save)
            logger: Logger to use (default: module logger)
        """
        self.results_dir = Path(results_dir)
        self.logger = logger or logging.getLogger(__name__)

    def save_test_results(self, results: Sequence[TestResult], instance_id: str) -> Path:
        """Write a result set to a new timestamped file.

        Args:
            results: Results of one run
            instance_id: Key the run is stored under

        Returns:
            Path of the written file

        Raises:
            SerializationError: if the directory or file cannot be written
        """
        key = _safe_key(instance_id)
        try:
            payload = json.dumps([r.to_dict() for r in results], indent=2)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"failed to serialize test results: {e}") from e

        try:
            self.results_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.datetime.now()
            while True:
                path = self.results_dir / (
                    f"{RESULTS_FILE_PREFIX}{key}-{timestamp.strftime(TIMESTAMP_FORMAT)}.json"
                )
                try:
                    # "x" never overwrites an earlier run
                    with path.open("x", encoding="utf-8") as f:
                        f.write(payload)
                    break
                except FileExistsError:
                    timestamp += datetime.timedelta(microseconds=1)
        except OSError as e:
            raise SerializationError(f"failed to write test results: {e}") from e

        self.logger.info(f"Test results saved to {path}")
        return path

    def list_result_runs(self, instance_id: Optional[str] = None) -> List[ResultRun]:
        """List stored runs, oldest first, ordered by the timestamp in the filename.

        Args:
            instance_id: Only runs stored under this key (default: all keys)
        """
        if not self.results_dir.is_dir():
            return []

        wanted = _safe_key(instance_id) if instance_id is not None else None
        runs = []
        for path in self.results_dir.iterdir():
            match = _RESULTS_FILE_RE.match(path.name)
            if not match or not path.is_file():
                continue
            if wanted is not None and match.group("key") != wanted:
                continue
            try:
                timestamp = datetime.datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT)
            except ValueError:
                continue
            runs.append(ResultRun(key=match.group("key"), timestamp=timestamp, path=path))

        runs.sort(key=lambda r: r.timestamp)
        return runs

    def load_result_file(self, path: Path) -> List[TestResult]:
        """Read one result file.

        Raises:
            SerializationError: unreadable or malformed file
        """
        try:
            with Path(path).open(encoding="utf-8") as f:
                data = json.load(f)
            return [TestResult.from_dict(item) for item in data]
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise SerializationError(f"failed to read test results from {path}: {e}") from e

    def load_test_results(self, instance_id: str) -> List[TestResult]:
        """Load the most recent result set stored under a key.

        Raises:
            ResultsNotFoundError: no stored run for this key
            SerializationError: latest file is unreadable
        """
        runs = self.list_result_runs(instance_id)
        if not runs:
            raise ResultsNotFoundError(f"no test results found for instance {instance_id}")
        return self.load_result_file(runs[-1].path)


class ComparisonStatus(str, Enum):
    IMPROVED = "improved"
    REGRESSED = "regressed"
    STABLE_PASS = "stable_pass"
    STABLE_FAIL = "stable_fail"
    NEW = "new"
    REMOVED = "removed"


class DurationStatus(str, Enum):
    FASTER = "faster"
    SLOWER = "slower"
    SAME = "same"


@dataclass
class TestComparisonDetail:
    """How one test changed between two runs."""

    __test__ = False

    test_name: str
    status: ComparisonStatus
    current: Optional[TestResult] = None
    previous: Optional[TestResult] = None
    duration_change: Optional[float] = None  # current - previous, seconds
    duration_status: Optional[DurationStatus] = None

    def to_dict(self) -> Dict:
        return {
            "test_name": self.test_name,
            "status": self.status.value,
            "current_success": self.current.success if self.current else None,
            "previous_success": self.previous.success if self.previous else None,
            "duration_change": self.duration_change,
            "duration_status": self.duration_status.value if self.duration_status else None,
        }


@dataclass
class TestComparison:
    """Comparison of a current result set against a previous one."""

    __test__ = False

    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    improved_tests: int = 0
    regressed_tests: int = 0
    new_tests: int = 0
    removed_tests: int = 0
    details: Dict[str, TestComparisonDetail] = field(default_factory=dict)

    @property
    def regression_detected(self) -> bool:
        return self.regressed_tests > 0

    def with_status(self, status: ComparisonStatus) -> List[TestComparisonDetail]:
        return [d for d in self.details.values() if d.status == status]

    def summary(self) -> str:
        """Get human-readable summary."""
        parts = [f"{self.passed_tests}/{self.total_tests} passed"]
        if self.regressed_tests:
            parts.append(f"✗ {self.regressed_tests} regressed")
        if self.improved_tests:
            parts.append(f"✓ {self.improved_tests} improved")
        if self.new_tests:
            parts.append(f"{self.new_tests} new")
        if self.removed_tests:
            parts.append(f"{self.removed_tests} removed")
        if not self.regressed_tests and not self.improved_tests:
            parts.append("no status changes")
        return " | ".join(parts)

    def to_dict(self) -> Dict:
        return {
            "total_tests": self.total_tests,
            "passed_tests": self.passed_tests,
            "failed_tests": self.failed_tests,
            "improved_tests": self.improved_tests,
            "regressed_tests": self.regressed_tests,
            "new_tests": self.new_tests,
            "removed_tests": self.removed_tests,
            "details": {name: d.to_dict() for name, d in self.details.items()},
        }


def _duration_delta(current: TestResult, previous: TestResult) -> Tuple[float, DurationStatus]:
    delta = current.duration - previous.duration
    if delta < 0:
        return delta, DurationStatus.FASTER
    if delta > 0:
        return delta, DurationStatus.SLOWER
    return 0.0, DurationStatus.SAME


def compare_test_results(
    current: Sequence[TestResult], previous: Sequence[TestResult]
) -> TestComparison:
    """Classify every test of ``current`` against ``previous``.

    A test name appearing twice in one set counts once; the later entry wins.

    Args:
        current: Results of this run
        previous: Results of the run to compare against

    Returns:
        TestComparison with counters and per-test details
    """
    current_map: Dict[str, TestResult] = {r.test_name: r for r in current}
    previous_map: Dict[str, TestResult] = {r.test_name: r for r in previous}

    comparison = TestComparison(total_tests=len(current_map))

    for name, cur in current_map.items():
        if cur.success:
            comparison.passed_tests += 1
        else:
            comparison.failed_tests += 1

        prev = previous_map.get(name)
        if prev is None:
            comparison.new_tests += 1
            comparison.details[name] = TestComparisonDetail(
                test_name=name, status=ComparisonStatus.NEW, current=cur
            )
            continue

        if not prev.success and cur.success:
            status = ComparisonStatus.IMPROVED
            comparison.improved_tests += 1
        elif prev.success and not cur.success:
            status = ComparisonStatus.REGRESSED
            comparison.regressed_tests += 1
        elif cur.success:
            status = ComparisonStatus.STABLE_PASS
        else:
            status = ComparisonStatus.STABLE_FAIL

        delta, duration_status = _duration_delta(cur, prev)
        comparison.details[name] = TestComparisonDetail(
            test_name=name,
            status=status,
            current=cur,
            previous=prev,
            duration_change=delta,
            duration_status=duration_status,
        )

    for name, prev in previous_map.items():
        if name not in current_map:
            comparison.removed_tests += 1
            comparison.details[name] = TestComparisonDetail(
                test_name=name, status=ComparisonStatus.REMOVED, previous=prev
            )

    return comparison


def format_comparison(comparison: TestComparison, label: str = "previous run") -> str:
    """Format a comparison for display.

    Args:
        comparison: TestComparison to format
        label: What the results were compared against

    Returns:
        Formatted string
    """
    lines = [f"Comparison with {label}:", "=" * 80, comparison.summary(), ""]

    for detail in comparison.details.values():
        if detail.status in (ComparisonStatus.STABLE_PASS, ComparisonStatus.STABLE_FAIL):
            line = f"  {detail.test_name}: {detail.status.value}"
        else:
            line = f"  {detail.test_name}: {detail.status.value.upper()}"
        if detail.duration_status and detail.duration_status != DurationStatus.SAME:
            line += f" ({detail.duration_status.value} {abs(detail.duration_change):.3f}s)"
        lines.append(line)
        if detail.status == ComparisonStatus.REGRESSED and detail.current is not None:
            lines.append(f"     {detail.current.error}")

    lines.append("")
    if comparison.regression_detected:
        lines.append("⚠ Regressions detected - investigate the failing tests above.")
    else:
        lines.append("✓ No regressions detected.")
    return "\n".join(lines)
