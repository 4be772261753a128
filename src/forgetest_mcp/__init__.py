"""
Forgetest MCP - Model Context Protocol server for testing embedded Linux images.

This package boots freshly built Forge images in QEMU, runs test scenarios
over SSH, collects guest metrics, and compares results against earlier runs
to flag regressions.
"""

__version__ = "0.1.0"
