"""
taskplanner: crash-safe task-graph orchestration for agent workflows.
"""

from taskplanner.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
