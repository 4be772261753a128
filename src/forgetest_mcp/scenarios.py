"""
Test scenarios and the engine that runs them against a booted instance.
"""
import asyncio
import datetime
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Iterator, List, Optional, Sequence

from .errors import CommandFailedError, CommandTimeoutError, HarnessError
from .metrics import MetricsCollector, TestMetrics
from .remote import RemoteExecutor
from .results import TestResult

if TYPE_CHECKING:
    from .vm_manager import VMInstance

logger = logging.getLogger(__name__)

BOOT_PROBE_TIMEOUT = 120.0
BOOT_PROBE_INTERVAL = 5.0
PING_TARGET = "8.8.8.8"
PING_COUNT = 3
SSH_DAEMONS = ("sshd", "dropbear")

_PING_SUMMARY_RE = re.compile(r"(\d+) packets transmitted, (\d+) (?:packets )?received")


@dataclass
class ScenarioContext:
    """What a scenario may use while it runs. Valid for one run only."""

    executor: RemoteExecutor
    timeout: float
    logger: logging.Logger


@dataclass
class ScenarioOutcome:
    """What a scenario function reports; the engine adds timing and metrics."""

    success: bool
    output: str = ""
    error: str = ""


ScenarioFunc = Callable[[ScenarioContext, "VMInstance"], Awaitable[ScenarioOutcome]]


@dataclass(frozen=True)
class TestScenario:
    """A named, timeout-bounded check."""

    __test__ = False  # not a pytest test class

    name: str
    description: str
    timeout: float
    run: ScenarioFunc
    collect_metrics: bool = True


async def boot_scenario(ctx: ScenarioContext, instance: "VMInstance") -> ScenarioOutcome:
    """Poll until the guest accepts SSH logins."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + BOOT_PROBE_TIMEOUT
    while True:
        if await ctx.executor.probe(instance):
            return ScenarioOutcome(True, output="System booted successfully")
        remaining = deadline - loop.time()
        if remaining <= 0:
            return ScenarioOutcome(False, error="boot timeout")
        await asyncio.sleep(min(BOOT_PROBE_INTERVAL, remaining))


async def network_scenario(ctx: ScenarioContext, instance: "VMInstance") -> ScenarioOutcome:
    result = await ctx.executor.execute(instance, f"ping -c {PING_COUNT} {PING_TARGET}", 30)
    match = _PING_SUMMARY_RE.search(result.stdout)
    if match and int(match.group(1)) > 0 and match.group(1) == match.group(2):
        return ScenarioOutcome(True, output="Network connectivity verified - ping successful")
    return ScenarioOutcome(
        False, output=result.stdout, error="Network test failed - ping unsuccessful"
    )


async def services_scenario(ctx: ScenarioContext, instance: "VMInstance") -> ScenarioOutcome:
    # BusyBox ps rejects "aux"
    result = await ctx.executor.execute(instance, "ps aux 2>/dev/null || ps", 10)
    for line in result.stdout.splitlines():
        if any(daemon in line for daemon in SSH_DAEMONS):
            return ScenarioOutcome(True, output=f"SSH service is running\n{line.strip()}")
    return ScenarioOutcome(False, output=result.stdout, error="SSH service is not running")


async def performance_scenario(ctx: ScenarioContext, instance: "VMInstance") -> ScenarioOutcome:
    # dd reports its record counts on stderr
    result = await ctx.executor.execute(
        instance, "time dd if=/dev/zero of=/dev/null bs=1M count=100 2>&1", 120
    )
    if "100+0 records in" in result.stdout and "100+0 records out" in result.stdout:
        return ScenarioOutcome(
            True, output=f"Performance test completed successfully\n{result.stdout}"
        )
    return ScenarioOutcome(
        False, output=result.stdout, error="Performance test did not complete successfully"
    )


async def stress_scenario(ctx: ScenarioContext, instance: "VMInstance") -> ScenarioOutcome:
    result = await ctx.executor.execute(
        instance, "echo 'Testing system stress...' && free -h && uptime", 180
    )
    if "Mem:" in result.stdout and "load average" in result.stdout:
        return ScenarioOutcome(
            True, output=f"Stress test completed - system information retrieved\n{result.stdout}"
        )
    return ScenarioOutcome(
        False, output=result.stdout, error="Stress test failed to retrieve system information"
    )


class ScenarioRegistry:
    """Ordered set of scenarios, unique by name."""

    def __init__(self, scenarios: Sequence[TestScenario] = ()):
        self._scenarios: "OrderedDict[str, TestScenario]" = OrderedDict()
        for scenario in scenarios:
            self.register(scenario)

    def register(self, scenario: TestScenario):
        if scenario.name in self._scenarios:
            raise ValueError(f"Scenario already registered: {scenario.name}")
        if scenario.timeout <= 0:
            raise ValueError(f"Scenario {scenario.name} needs a positive timeout")
        self._scenarios[scenario.name] = scenario

    def get(self, name: str) -> TestScenario:
        try:
            return self._scenarios[name]
        except KeyError:
            raise ValueError(
                f"Unknown scenario: {name} (available: {', '.join(self.names())})"
            ) from None

    def names(self) -> List[str]:
        return list(self._scenarios)

    def select(self, names: Optional[Sequence[str]] = None) -> List[TestScenario]:
        """Scenarios matching ``names`` (all if empty), always in registry order."""
        if not names:
            return list(self._scenarios.values())
        for name in names:
            self.get(name)
        wanted = set(names)
        return [s for s in self._scenarios.values() if s.name in wanted]

    def __iter__(self) -> Iterator[TestScenario]:
        return iter(list(self._scenarios.values()))

    def __len__(self) -> int:
        return len(self._scenarios)


def default_scenarios() -> List[TestScenario]:
    """The built-in scenarios, in run order."""
    return [
        TestScenario(
            "boot", "Test that the system boots successfully", BOOT_PROBE_TIMEOUT + 30, boot_scenario
        ),
        TestScenario("network", "Test network connectivity", 60, network_scenario),
        TestScenario("services", "Test that essential services are running", 60, services_scenario),
        TestScenario("performance", "Test basic system performance", 120, performance_scenario),
        TestScenario("stress", "Test system under stress", 180, stress_scenario),
    ]


def default_registry() -> ScenarioRegistry:
    return ScenarioRegistry(default_scenarios())


class ScenarioEngine:
    """Runs scenarios against an instance, one at a time."""

    def __init__(
        self,
        executor: RemoteExecutor,
        registry: Optional[ScenarioRegistry] = None,
        metrics: Optional[MetricsCollector] = None,
        config_hash: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize scenario engine.

        Args:
            executor: Remote executor used by scenarios
            registry: Scenario registry (default: built-in scenarios)
            metrics: Metrics collector (default: one built on ``executor``)
            config_hash: Stamped onto every TestResult
            logger: Logger to use (default: module logger)
        """
        self.executor = executor
        self.registry = registry or default_registry()
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics or MetricsCollector(executor, logger=self.logger)
        self.config_hash = config_hash

    async def _collect_metrics(self, instance: "VMInstance") -> Optional[TestMetrics]:
        try:
            return await self.metrics.collect_system_metrics(instance)
        except HarnessError as e:
            self.logger.debug(f"Metrics collection failed for {instance.id}: {e}")
            return None

    async def run_test_scenario(self, instance: "VMInstance", scenario: TestScenario) -> TestResult:
        """Run one scenario once and capture its outcome.

        Failures (including timeouts) end up in the returned TestResult;
        only cancellation of the calling task propagates.
        """
        self.logger.info(f"Running test scenario: {scenario.name}")
        ctx = ScenarioContext(executor=self.executor, timeout=scenario.timeout, logger=self.logger)
        start_time = datetime.datetime.now()

        try:
            outcome = await asyncio.wait_for(scenario.run(ctx, instance), scenario.timeout)
        except asyncio.TimeoutError:
            outcome = ScenarioOutcome(
                False, error=f"scenario timed out after {scenario.timeout:g}s"
            )
        except CommandTimeoutError as e:
            outcome = ScenarioOutcome(False, output=e.stdout, error=str(e))
        except CommandFailedError as e:
            error = str(e)
            if e.stderr.strip():
                error += f" (stderr: {e.stderr.strip()})"
            outcome = ScenarioOutcome(False, output=e.stdout, error=error)
        except HarnessError as e:
            outcome = ScenarioOutcome(False, error=str(e))
        except Exception as e:
            self.logger.error(f"Scenario {scenario.name} crashed: {e}", exc_info=True)
            outcome = ScenarioOutcome(False, error=f"{type(e).__name__}: {e}")

        end_time = datetime.datetime.now()
        metrics = await self._collect_metrics(instance) if scenario.collect_metrics else None

        result = TestResult(
            test_name=scenario.name,
            success=outcome.success,
            start_time=start_time,
            end_time=end_time,
            output=outcome.output,
            error="" if outcome.success else (outcome.error or "test failed"),
            instance_id=instance.id,
            config_hash=self.config_hash,
            metrics=metrics,
        )

        if result.success:
            self.logger.info(f"✓ Test {scenario.name} PASSED in {result.duration:.1f}s")
        else:
            self.logger.error(f"✗ Test {scenario.name} FAILED: {result.error}")
        return result

    async def run_scenarios(
        self, instance: "VMInstance", names: Optional[Sequence[str]] = None
    ) -> List[TestResult]:
        """Run the selected scenarios sequentially in registry order.

        Raises:
            ValueError: unknown scenario name
        """
        results = []
        for scenario in self.registry.select(names):
            results.append(await self.run_test_scenario(instance, scenario))
        return results
