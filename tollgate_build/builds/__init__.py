"""Build orchestration module.

This module handles:
- Overlay staging
- Execution environments (host, container)
- Running the Image Builder and checking its output
- Artifact location and build reports
- The end-to-end local pipeline
"""

from tollgate_build.builds.artifacts import ArtifactNotFoundError, locate_artifact
from tollgate_build.builds.environment import (
    ContainerEnvironment,
    EnvironmentUnavailableError,
    ExecutionEnvironment,
    HostEnvironment,
)
from tollgate_build.builds.runner import (
    BuildExecutionError,
    SubprocessRunner,
    run_build,
)

__all__ = [
    "ArtifactNotFoundError",
    "BuildExecutionError",
    "ContainerEnvironment",
    "EnvironmentUnavailableError",
    "ExecutionEnvironment",
    "HostEnvironment",
    "SubprocessRunner",
    "locate_artifact",
    "run_build",
]
