"""
MCP server for testing built Forge images in QEMU.
"""
import atexit
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server import Server
from mcp.types import TextContent, Tool

from .config import load_harness_config
from .errors import ResultsNotFoundError
from .harness import TestHarness, format_run_report, summarize_instances
from .ports import PortAllocator
from .results import compare_test_results, format_comparison
from .scenarios import default_registry
from .vm_manager import VMInstance, VMManager

# Configure logging - log to both file and stderr
# File logging allows tailing progress: tail -f /tmp/forgetest-mcp.log
log_file = Path("/tmp/forgetest-mcp.log")
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(log_file, mode="a"),
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger(__name__)
logger.info("=" * 80)
logger.info("forgetest-mcp server starting")
logger.info(f"Log file: {log_file}")
logger.info("=" * 80)

DEFAULT_ARTIFACTS_DIR = Path("build") / "artifacts" / "images"

app = Server("forgetest-mcp")

# Shared by every harness so concurrent launches never collide on a port
port_allocator = PortAllocator()

# instance id -> harness that launched it (and owns its process)
_running: Dict[str, TestHarness] = {}


def _cleanup_on_exit():
    """Kill instances left running when the server exits."""
    for harness in set(_running.values()):
        harness.vm_manager.kill_all()
    _running.clear()


atexit.register(_cleanup_on_exit)


_CONFIG_PROPERTIES = {
    "project_dir": {
        "type": "string",
        "description": "Path to the Forge project (contains forge.yml)",
    },
    "architecture": {
        "type": "string",
        "description": "Override target architecture from forge.yml",
    },
    "memory_mb": {"type": "integer", "description": "Guest memory in MB (default: 512)"},
    "boot_timeout": {
        "type": "number",
        "description": "Seconds to wait for SSH after launch (default: 30)",
    },
}


def _make_harness(arguments: Dict[str, Any]) -> TestHarness:
    project_dir = Path(arguments["project_dir"]).expanduser()
    if not project_dir.exists():
        raise ValueError(f"Project directory does not exist: {project_dir}")
    config = load_harness_config(
        project_dir,
        architecture=arguments.get("architecture"),
        memory_mb=arguments.get("memory_mb"),
        boot_timeout=arguments.get("boot_timeout"),
    )
    vm_manager = VMManager(config, port_allocator=port_allocator)
    return TestHarness(config, vm_manager=vm_manager)


def _image_path(arguments: Dict[str, Any]) -> Path:
    image = arguments.get("image_path")
    if image:
        return Path(image).expanduser()
    return Path(arguments["project_dir"]).expanduser() / DEFAULT_ARTIFACTS_DIR


def _lookup_instance(instance_id: str) -> tuple[TestHarness, VMInstance]:
    harness = _running.get(instance_id)
    instance = harness.vm_manager.get_instance(instance_id) if harness else None
    if harness is None or instance is None:
        _running.pop(instance_id, None)
        raise ValueError(f"No running instance with id {instance_id}")
    return harness, instance


def _text(text: str) -> List[TextContent]:
    return [TextContent(type="text", text=text)]


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available MCP tools."""
    scenario_names = default_registry().names()
    return [
        Tool(
            name="check_test_prerequisites",
            description="Check that QEMU, the image and host resources are available for testing",
            inputSchema={
                "type": "object",
                "properties": {
                    **_CONFIG_PROPERTIES,
                    "image_path": {
                        "type": "string",
                        "description": "Image file or artifacts dir (default: build/artifacts/images)",
                    },
                    "instances": {"type": "integer", "default": 1},
                },
                "required": ["project_dir"],
            },
        ),
        Tool(
            name="list_test_scenarios",
            description="List built-in test scenarios with their timeouts",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="start_test_instance",
            description="Boot a QEMU instance from a built image and wait until SSH is reachable",
            inputSchema={
                "type": "object",
                "properties": {
                    **_CONFIG_PROPERTIES,
                    "image_path": {
                        "type": "string",
                        "description": "Image file or artifacts dir (default: build/artifacts/images)",
                    },
                },
                "required": ["project_dir"],
            },
        ),
        Tool(
            name="list_test_instances",
            description="List QEMU instances started by this server that are still running",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="stop_test_instance",
            description="Power down and kill a running QEMU instance",
            inputSchema={
                "type": "object",
                "properties": {"instance_id": {"type": "string"}},
                "required": ["instance_id"],
            },
        ),
        Tool(
            name="run_test_scenarios",
            description="Run test scenarios against a running instance, save and compare results",
            inputSchema={
                "type": "object",
                "properties": {
                    "instance_id": {"type": "string"},
                    "scenarios": {
                        "type": "array",
                        "items": {"type": "string", "enum": scenario_names},
                        "description": "Scenarios to run (default: all, in order)",
                    },
                    "save_as": {
                        "type": "string",
                        "description": "Result key to store under (default: <project>-1)",
                    },
                },
                "required": ["instance_id"],
            },
        ),
        Tool(
            name="run_image_tests",
            description=(
                "Full test run: launch N instances, run scenarios, save results, "
                "compare with the previous run and stop the instances"
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    **_CONFIG_PROPERTIES,
                    "image_path": {
                        "type": "string",
                        "description": "Image file or artifacts dir (default: build/artifacts/images)",
                    },
                    "instances": {"type": "integer", "default": 1},
                    "scenarios": {
                        "type": "array",
                        "items": {"type": "string", "enum": scenario_names},
                    },
                    "keep_running": {
                        "type": "boolean",
                        "default": False,
                        "description": "Leave instances running for inspection",
                    },
                },
                "required": ["project_dir"],
            },
        ),
        Tool(
            name="list_test_results",
            description="List stored test result runs",
            inputSchema={
                "type": "object",
                "properties": {
                    "project_dir": {"type": "string"},
                    "key": {"type": "string", "description": "Only runs stored under this key"},
                },
                "required": ["project_dir"],
            },
        ),
        Tool(
            name="compare_test_results",
            description=(
                "Compare the latest stored run under a key with the run before it, "
                "or with the latest run under another key"
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "project_dir": {"type": "string"},
                    "key": {"type": "string"},
                    "against_key": {"type": "string"},
                },
                "required": ["project_dir", "key"],
            },
        ),
    ]


def _compare_stored(arguments: Dict[str, Any]) -> str:
    harness = _make_harness(arguments)
    store = harness.store
    key = arguments["key"]
    against_key: Optional[str] = arguments.get("against_key")

    current = store.load_test_results(key)
    if against_key:
        previous = store.load_test_results(against_key)
        label = f"latest run of {against_key}"
    else:
        runs = store.list_result_runs(key)
        if len(runs) < 2:
            raise ResultsNotFoundError(f"only one stored run for {key}, nothing to compare")
        previous = store.load_result_file(runs[-2].path)
        label = f"run of {runs[-2].timestamp.isoformat()}"

    return format_comparison(compare_test_results(current, previous), label)


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls."""
    logger.info("=" * 80)
    logger.info(f"TOOL CALL: {name}")
    logger.info(f"Arguments: {arguments}")
    logger.info("=" * 80)
    arguments = arguments or {}

    try:
        if name == "check_test_prerequisites":
            harness = _make_harness(arguments)
            checks = harness.check_prerequisites(
                _image_path(arguments), instances=arguments.get("instances", 1)
            )
            lines = [f"{'✓' if c.ok else '✗'} {c.name}: {c.message}" for c in checks]
            return _text("\n".join(lines))

        elif name == "list_test_scenarios":
            lines = [
                f"{s.name}: {s.description} (timeout {s.timeout:g}s)" for s in default_registry()
            ]
            return _text("\n".join(lines))

        elif name == "start_test_instance":
            harness = _make_harness(arguments)
            instance = await harness.vm_manager.start_instance(_image_path(arguments))
            _running[instance.id] = harness
            return _text(
                f"✓ Instance {instance.id} running\n"
                f"SSH access: ssh -p {instance.ssh_port} "
                f"{harness.config.credentials.username}@localhost\n\n"
                + json.dumps(instance.to_dict(), indent=2)
            )

        elif name == "list_test_instances":
            instances = []
            for instance_id, harness in list(_running.items()):
                instance = harness.vm_manager.get_instance(instance_id)
                if instance is None:
                    _running.pop(instance_id, None)
                    continue
                instances.append(instance)
            if not instances:
                return _text("No running instances")
            return _text(json.dumps(summarize_instances(instances), indent=2))

        elif name == "stop_test_instance":
            harness, instance = _lookup_instance(arguments["instance_id"])
            await harness.vm_manager.stop_instance(instance)
            _running.pop(instance.id, None)
            return _text(f"✓ Instance {instance.id} stopped")

        elif name == "run_test_scenarios":
            harness, instance = _lookup_instance(arguments["instance_id"])
            results = await harness.engine.run_scenarios(instance, arguments.get("scenarios"))
            key = arguments.get("save_as") or harness.result_key(1)
            path, comparison = harness.persist_and_compare(results, key)

            lines = []
            for result in results:
                status = "PASS" if result.success else "FAIL"
                lines.append(f"{status}: {result.test_name} ({result.duration:.3f}s)")
                if not result.success:
                    lines.append(f"    Error: {result.error}")
            passed = sum(1 for r in results if r.success)
            lines.append(f"\nOverall: {passed}/{len(results)} tests passed")
            if path:
                lines.append(f"Results saved to {path}")
            lines.append("")
            if comparison is not None:
                lines.append(format_comparison(comparison))
            else:
                lines.append("No previous results - comparison skipped")
            return _text("\n".join(lines))

        elif name == "run_image_tests":
            harness = _make_harness(arguments)
            keep_running = arguments.get("keep_running", False)
            report = await harness.run(
                _image_path(arguments),
                instances=arguments.get("instances", 1),
                scenario_names=arguments.get("scenarios"),
                keep_running=keep_running,
            )
            if keep_running:
                for instance in harness.running_instances():
                    _running[instance.id] = harness
            return _text(format_run_report(report))

        elif name == "list_test_results":
            harness = _make_harness(arguments)
            runs = harness.store.list_result_runs(arguments.get("key"))
            if not runs:
                return _text(f"No test results found in {harness.store.results_dir}")
            return _text(json.dumps([r.to_dict() for r in runs], indent=2))

        elif name == "compare_test_results":
            return _text(_compare_stored(arguments))

        else:
            raise ValueError(f"Unknown tool: {name}")

    except Exception as e:
        logger.error(f"Error in tool {name}: {e}", exc_info=True)
        return _text(f"Error: {str(e)}")


def main():
    """Main entry point for the MCP server."""
    import asyncio
    import mcp.server.stdio

    async def run():
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await app.run(read_stream, write_stream, app.create_initialization_options())

    asyncio.run(run())


if __name__ == "__main__":
    main()
