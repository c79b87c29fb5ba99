"""
Devloop - Autonomous generate, apply, test and retry loop.

This package drives an external AI coding agent as a subprocess, recovers a
structured edit-set from its free-form output, applies it to the workspace
and runs the tests, turning failures into fix tasks until the task list is
done or a task is blocked.
"""

__version__ = "0.1.0"
