"""Runtime module for child process management.

This module provides isolated process execution and reliable termination of
the child's whole process group.
"""

from __future__ import annotations

from .process_runner import ProcessRunner, ProcessSpec

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
]
