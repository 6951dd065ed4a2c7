"""
CLI layer for upkeep.

Developer tooling on top of the engine: preview fixed-calendar patterns,
validate rule files, and run a tick against a JSON fixture world. All
generation logic lives in ``upkeep.core.scheduling``.

Entry point::

    upkeep --help
"""

from upkeep.cli.app import app

__all__ = ["app"]
