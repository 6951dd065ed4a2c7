"""
Upkeep - Recurring maintenance work generation.

Packages:
- upkeep.core: Shared primitives (errors, result, hashing, logging, settings, retry)
- upkeep.core.scheduling: Rule model, recurrence calculator and generation run loop
- upkeep.cli: Developer command line
"""

__version__ = "0.1.0"
