"""Remote build module.

This module handles:
- Submitting builds to a remote CI executor (GitHub Actions)
- Polling job status with a bounded wait
- Retrieving the produced firmware
"""

from tollgate_build.remote.driver import (
    RemoteBuildDriver,
    RemoteJobFailedError,
    RemoteProtocolError,
    RemoteTimeoutError,
)
from tollgate_build.remote.executor import (
    GitHubActionsExecutor,
    RemoteExecutor,
    RemoteExecutorError,
)

__all__ = [
    "GitHubActionsExecutor",
    "RemoteBuildDriver",
    "RemoteExecutor",
    "RemoteExecutorError",
    "RemoteJobFailedError",
    "RemoteProtocolError",
    "RemoteTimeoutError",
]
