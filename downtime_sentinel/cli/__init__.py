"""Command-line interface for Downtime Sentinel.

This package provides commands for validating schedule configuration,
previewing upcoming maintenance windows and running the scheduler.
"""

from .main import cli, main

__all__ = [
    'cli',
    'main',
]
