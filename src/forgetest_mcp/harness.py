"""
End-to-end image test runs: launch instances, run scenarios, persist and compare.
"""
import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .config import HarnessConfig
from .errors import HarnessError, ResultsNotFoundError, SerializationError
from .metrics import MetricsCollector
from .results import (
    ResultStore,
    TestComparison,
    TestResult,
    compare_test_results,
    format_comparison,
)
from .scenarios import ScenarioEngine, ScenarioRegistry
from .vm_manager import VMInstance, VMManager, locate_image_artifacts

logger = logging.getLogger(__name__)

MIN_FREE_DISK_MB = 1024


@dataclass
class PrerequisiteCheck:
    name: str
    ok: bool
    message: str


@dataclass
class InstanceRunReport:
    """Everything one instance slot produced during a run."""

    slot: int
    result_key: str
    instance_id: Optional[str] = None
    results: List[TestResult] = field(default_factory=list)
    results_path: Optional[Path] = None
    comparison: Optional[TestComparison] = None
    error: Optional[str] = None

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def success(self) -> bool:
        return self.error is None and all(r.success for r in self.results)


@dataclass
class HarnessRunReport:
    instances: List[InstanceRunReport] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(len(r.results) for r in self.instances)

    @property
    def passed(self) -> int:
        return sum(r.passed for r in self.instances)

    @property
    def success(self) -> bool:
        return bool(self.instances) and all(r.success for r in self.instances)


class TestHarness:
    """Drives image test runs across one or more VM instances."""

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        config: HarnessConfig,
        vm_manager: Optional[VMManager] = None,
        registry: Optional[ScenarioRegistry] = None,
        store: Optional[ResultStore] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.vm_manager = vm_manager or VMManager(config, logger=self.logger)
        self.engine = ScenarioEngine(
            self.vm_manager.executor,
            registry=registry,
            metrics=MetricsCollector(
                self.vm_manager.executor,
                command_timeout=config.metrics_command_timeout,
                logger=self.logger,
            ),
            config_hash=config.config_hash(),
            logger=self.logger,
        )
        self.store = store or ResultStore(config.results_dir, logger=self.logger)

    def result_key(self, slot: int) -> str:
        """Stable key for a slot so consecutive runs can be compared."""
        return f"{self.config.project_name}-{slot}"

    def check_prerequisites(
        self, image_path: Optional[Path] = None, instances: int = 1
    ) -> List[PrerequisiteCheck]:
        """Check the host can run the requested test instances.

        Args:
            image_path: Image to test (existence only)
            instances: Number of VMs that will run side by side

        Returns:
            One PrerequisiteCheck per item
        """
        checks = []

        ok, message = self.vm_manager.check_qemu()
        checks.append(PrerequisiteCheck("qemu", ok, message))

        if image_path is not None:
            try:
                artifacts = locate_image_artifacts(image_path)
                desc = f"disk {artifacts.disk}"
                if artifacts.kernel:
                    desc += f", kernel {artifacts.kernel}"
                checks.append(PrerequisiteCheck("image", True, desc))
            except FileNotFoundError as e:
                checks.append(PrerequisiteCheck("image", False, str(e)))

        probe_dir = self.config.project_dir
        while not probe_dir.exists() and probe_dir != probe_dir.parent:
            probe_dir = probe_dir.parent
        free_mb = shutil.disk_usage(probe_dir).free // (1024 * 1024)
        checks.append(
            PrerequisiteCheck(
                "disk",
                free_mb >= MIN_FREE_DISK_MB,
                f"{free_mb} MB free in {probe_dir} (need {MIN_FREE_DISK_MB} MB)",
            )
        )

        needed_mb = self.config.memory_mb * max(instances, 1)
        try:
            avail_mb = os.sysconf("SC_AVPHYS_PAGES") * os.sysconf("SC_PAGE_SIZE") // (1024 * 1024)
            checks.append(
                PrerequisiteCheck(
                    "memory",
                    avail_mb >= needed_mb,
                    f"{avail_mb} MB available (need {needed_mb} MB for {instances} instance(s))",
                )
            )
        except (ValueError, OSError):
            checks.append(PrerequisiteCheck("memory", True, "available memory unknown, skipped"))

        return checks

    def persist_and_compare(
        self, results: List[TestResult], key: str
    ) -> Tuple[Optional[Path], Optional[TestComparison]]:
        """Save a result set and compare it with the previous one under ``key``.

        The previous run is read before saving so the new file never
        compares against itself. Missing baselines and I/O errors only cost
        the comparison or the saved file, never the in-memory results.
        """
        previous: Optional[List[TestResult]] = None
        try:
            previous = self.store.load_test_results(key)
        except ResultsNotFoundError:
            self.logger.info(f"No previous results for {key}, skipping comparison")
        except SerializationError as e:
            self.logger.warning(f"Previous results for {key} unreadable: {e}")

        path = None
        try:
            path = self.store.save_test_results(results, key)
        except SerializationError as e:
            self.logger.warning(f"Failed to save test results: {e}")

        comparison = compare_test_results(results, previous) if previous is not None else None
        if comparison is not None:
            self.logger.info(f"Comparison for {key}: {comparison.summary()}")
        return path, comparison

    async def run_instance(
        self,
        slot: int,
        image_path: Path,
        scenario_names: Optional[Sequence[str]] = None,
        keep_running: bool = False,
    ) -> InstanceRunReport:
        """Launch one instance, test it, record results, stop it.

        Launch failures are captured in the report; they never affect other slots.
        """
        report = InstanceRunReport(slot=slot, result_key=self.result_key(slot))
        self.logger.info(f"Launching QEMU instance {slot}...")
        try:
            instance = await self.vm_manager.start_instance(image_path)
        except HarnessError as e:
            report.error = f"failed to start QEMU instance {slot}: {e}"
            self.logger.error(report.error)
            return report

        report.instance_id = instance.id
        try:
            self.logger.info(f"Testing instance {instance.id}")
            report.results = await self.engine.run_scenarios(instance, scenario_names)
            report.results_path, report.comparison = self.persist_and_compare(
                report.results, report.result_key
            )
        finally:
            if not keep_running:
                await self.vm_manager.stop_instance(instance)
        return report

    async def run(
        self,
        image_path: Path,
        instances: int = 1,
        scenario_names: Optional[Sequence[str]] = None,
        keep_running: bool = False,
    ) -> HarnessRunReport:
        """Test an image on ``instances`` VMs in parallel.

        Args:
            image_path: Built image (file or artifacts directory)
            instances: Number of independent VMs
            scenario_names: Subset of scenarios (default: all)
            keep_running: Leave instances up after testing

        Raises:
            FileNotFoundError: image missing
            ValueError: unknown scenario name or bad instance count
        """
        if instances < 1:
            raise ValueError("instances must be at least 1")
        locate_image_artifacts(image_path)
        self.engine.registry.select(scenario_names)

        reports = await asyncio.gather(
            *(
                self.run_instance(slot, image_path, scenario_names, keep_running)
                for slot in range(1, instances + 1)
            )
        )
        return HarnessRunReport(instances=list(reports))

    def running_instances(self) -> List[VMInstance]:
        return self.vm_manager.list_instances()


def format_run_report(report: HarnessRunReport) -> str:
    """Format a run report like a test summary."""
    lines = ["Test Results Summary:", "===================="]

    for inst in report.instances:
        lines.append("")
        header = f"Instance {inst.slot} ({inst.instance_id or 'not started'}, key {inst.result_key})"
        lines.append(header)
        if inst.error:
            lines.append(f"  ✗ {inst.error}")
            continue

        for result in inst.results:
            status = "PASS" if result.success else "FAIL"
            lines.append(f"  {status}: {result.test_name} ({result.duration:.3f}s)")
            if not result.success:
                lines.append(f"    Error: {result.error}")
            m = result.metrics
            if m is not None:
                lines.append(
                    f"    CPU: {m.cpu_usage_percent:.1f}%, "
                    f"Mem: {m.memory_usage_mb:.1f}MB ({m.memory_usage_percent:.1f}%), "
                    f"Disk: {m.disk_usage_mb:.1f}MB ({m.disk_usage_percent:.1f}%)"
                )
                lines.append(
                    f"    Load: {m.load_average_1:.2f}, {m.load_average_5:.2f}, "
                    f"{m.load_average_15:.2f}"
                )

        if inst.results_path:
            lines.append(f"  Results: {inst.results_path}")
        if inst.comparison is not None:
            lines.append("")
            lines.extend("  " + line for line in format_comparison(inst.comparison).splitlines())
        else:
            lines.append("  No previous run to compare against")

    lines.append("")
    lines.append(f"Overall: {report.passed}/{report.total} tests passed")
    if not report.success:
        lines.append("Some tests failed - check logs for details")
    return "\n".join(lines)


def summarize_instances(instances: List[VMInstance]) -> List[Dict]:
    return [i.to_dict() for i in instances]
