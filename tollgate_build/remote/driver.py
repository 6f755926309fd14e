"""Remote build driver.

This module handles:
- Submitting a build job to a RemoteExecutor
- Fixed-interval polling until the job completes, bounded by a maximum wait
- Downloading and locating the firmware artifact of a successful job

Job status must move through queued, in_progress and completed. Any other
value stops the driver immediately.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from tollgate_build.builds.artifacts import (
    DEFAULT_ARTIFACT_SUFFIX,
    ArtifactNotFoundError,
    locate_artifact,
)
from tollgate_build.remote.executor import RemoteExecutor
from tollgate_build.types import ArtifactRef, RemoteJob, RemoteJobStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30
DEFAULT_MAX_WAIT = 2 * 60 * 60

KNOWN_STATUSES = frozenset(s.value for s in RemoteJobStatus)


class RemoteProtocolError(Exception):
    """Raised when the remote executor reports an unrecognized job status."""

    def __init__(self, message: str, code: str = "remote_protocol") -> None:
        super().__init__(message)
        self.code = code


class RemoteJobFailedError(Exception):
    """Raised when a remote job completes without success."""

    def __init__(
        self,
        message: str,
        job_id: str,
        url: str | None = None,
        conclusion: str | None = None,
        code: str = "remote_job_failed",
    ) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.url = url
        self.conclusion = conclusion
        self.code = code


class RemoteTimeoutError(Exception):
    """Raised when a remote job does not complete within the maximum wait."""

    def __init__(
        self,
        message: str,
        job_id: str,
        url: str | None = None,
        code: str = "remote_timeout",
    ) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.url = url
        self.code = code


class RemoteBuildDriver:
    """Drive a remote build from submission to artifact retrieval."""

    def __init__(
        self,
        executor: RemoteExecutor,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self._sleep = sleep
        self._clock = clock

    def _check_status(self, job: RemoteJob) -> None:
        if job.status not in KNOWN_STATUSES:
            raise RemoteProtocolError(
                f"Unrecognized status {job.status!r} for remote job {job.job_id}"
            )

    def submit_and_wait(
        self,
        repo: str,
        device_id: str,
        toolchain_version: str,
        release_channel: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_wait: float = DEFAULT_MAX_WAIT,
    ) -> RemoteJob:
        """Submit a build and block until it completes successfully.

        Args:
            repo: Repository running the build ("owner/name").
            device_id: Device profile to build.
            toolchain_version: OpenWrt release.
            release_channel: TollGate release channel.
            poll_interval: Seconds between status checks.
            max_wait: Maximum seconds to wait after submission.

        Returns:
            The completed job (conclusion=success).

        Raises:
            RemoteProtocolError: If an unknown status is reported.
            RemoteJobFailedError: If the job completes without success.
            RemoteTimeoutError: If the job is still running after max_wait.
        """
        job = self.executor.submit(repo, device_id, toolchain_version, release_channel)
        if job.repo is None:
            job.repo = repo
        url = job.url or self.executor.job_url(repo, job.job_id)
        logger.info("Submitted remote job %s: %s", job.job_id, url)

        start = self._clock()
        last_status: str | None = None
        while True:
            self._check_status(job)
            if job.status != last_status:
                logger.info("Remote job %s is %s", job.job_id, job.status)
                last_status = job.status

            if job.is_completed:
                if job.conclusion != "success":
                    raise RemoteJobFailedError(
                        f"Remote job {job.job_id} finished with conclusion "
                        f"{job.conclusion!r}. Details: {url}",
                        job_id=job.job_id,
                        url=url,
                        conclusion=job.conclusion,
                    )
                logger.info("Remote job %s completed successfully", job.job_id)
                return job

            if self._clock() - start >= max_wait:
                raise RemoteTimeoutError(
                    f"Remote job {job.job_id} did not complete within "
                    f"{max_wait:.0f} seconds. Details: {url}",
                    job_id=job.job_id,
                    url=url,
                )

            self._sleep(poll_interval)
            job = self.executor.get_status(repo, job.job_id)
            if job.repo is None:
                job.repo = repo

    def download_artifacts(
        self,
        job: RemoteJob,
        output_dir: Path,
        suffix: str = DEFAULT_ARTIFACT_SUFFIX,
    ) -> ArtifactRef:
        """Download a successful job's artifacts and locate the firmware.

        Artifacts land in output_dir/run-<job id>.

        Raises:
            RemoteJobFailedError: If the job has not completed with success.
            ArtifactNotFoundError: If no downloaded file matches suffix.
        """
        if not job.succeeded:
            raise RemoteJobFailedError(
                f"Refusing to download artifacts of remote job {job.job_id} "
                f"(status={job.status}, conclusion={job.conclusion})",
                job_id=job.job_id,
                url=job.url,
                conclusion=job.conclusion,
            )
        if not job.repo:
            raise ValueError("job.repo must be set to download artifacts")

        dest = output_dir / f"run-{job.job_id}"
        files = self.executor.download_artifacts(job.repo, job.job_id, dest)
        logger.info("Retrieved %d file(s) into %s", len(files), dest)

        artifact = locate_artifact(dest, suffix)
        if artifact is None:
            raise ArtifactNotFoundError(
                f"No *{suffix} among the artifacts of remote job {job.job_id}"
            )
        return artifact


__all__ = [
    "DEFAULT_MAX_WAIT",
    "DEFAULT_POLL_INTERVAL",
    "RemoteBuildDriver",
    "RemoteJobFailedError",
    "RemoteProtocolError",
    "RemoteTimeoutError",
]
