"""Remote build executors.

This module handles:
- The RemoteExecutor interface used by the remote build driver
- A GitHub Actions implementation over the REST API (workflow_dispatch,
  run status, artifact download)

Vendor status values are normalized to queued/in_progress/completed where
GitHub has synonyms; anything else is passed through unchanged so the
driver can reject it.
"""

from __future__ import annotations

import logging
import tempfile
import time
import zipfile
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

import httpx

from tollgate_build.types import RemoteJob, RemoteJobStatus

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_WEB_URL = "https://github.com"
GITHUB_API_VERSION = "2022-11-28"

DEFAULT_WORKFLOW = "build-tollgate.yml"
DEFAULT_REF = "main"

# Run discovery after a dispatch that returned no run id
RUN_LOOKUP_ATTEMPTS = 10
RUN_LOOKUP_DELAY = 3
# Tolerance between local and server clocks when matching dispatched runs
CLOCK_SKEW = timedelta(seconds=30)

REQUEST_TIMEOUT = 30
ARTIFACT_DOWNLOAD_TIMEOUT = 600
DOWNLOAD_CHUNK_SIZE = 64 * 1024

STATUS_ALIASES = {
    "requested": RemoteJobStatus.QUEUED.value,
    "waiting": RemoteJobStatus.QUEUED.value,
    "pending": RemoteJobStatus.QUEUED.value,
}


class RemoteExecutorError(Exception):
    """Raised when the remote executor API cannot be used."""

    def __init__(self, message: str, code: str = "remote_executor_error") -> None:
        super().__init__(message)
        self.code = code


class RemoteExecutor(Protocol):
    """Submits build jobs to a remote CI system and retrieves their output."""

    def submit(
        self,
        repo: str,
        device_id: str,
        toolchain_version: str,
        release_channel: str,
    ) -> RemoteJob: ...

    def get_status(self, repo: str, job_id: str) -> RemoteJob: ...

    def download_artifacts(self, repo: str, job_id: str, dest: Path) -> list[Path]: ...

    def job_url(self, repo: str, job_id: str) -> str: ...


def normalize_status(status: str | None) -> str:
    """Map vendor status synonyms onto RemoteJobStatus values."""
    if status is None:
        return ""
    return STATUS_ALIASES.get(status, status)


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def extract_zip(archive_path: Path, dest_dir: Path) -> list[Path]:
    """Extract a zip archive, refusing members that leave dest_dir.

    Returns:
        Paths of the extracted files.

    Raises:
        RemoteExecutorError: If the archive is invalid or unsafe.
    """
    dest_resolved = dest_dir.resolve()
    extracted: list[Path] = []
    try:
        with zipfile.ZipFile(archive_path) as zf:
            for member in zf.infolist():
                target = (dest_dir / member.filename).resolve()
                try:
                    target.relative_to(dest_resolved)
                except ValueError:
                    raise RemoteExecutorError(
                        f"Refusing to extract {member.filename}: path traversal detected",
                        code="path_traversal",
                    ) from None
                zf.extract(member, dest_dir)
                if not member.is_dir():
                    extracted.append(target)
    except zipfile.BadZipFile as e:
        raise RemoteExecutorError(
            f"Invalid artifact archive {archive_path}: {e}",
            code="bad_archive",
        ) from e
    return extracted


class GitHubActionsExecutor:
    """RemoteExecutor backed by GitHub Actions workflow_dispatch.

    The workflow receives the inputs device_id, openwrt_version and
    release_channel.
    """

    def __init__(
        self,
        client: httpx.Client,
        token: str | None = None,
        api_url: str = GITHUB_API_URL,
        web_url: str = GITHUB_WEB_URL,
        workflow: str = DEFAULT_WORKFLOW,
        ref: str = DEFAULT_REF,
        lookup_attempts: int = RUN_LOOKUP_ATTEMPTS,
        lookup_delay: float = RUN_LOOKUP_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.client = client
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.web_url = web_url.rstrip("/")
        self.workflow = workflow
        self.ref = ref
        self.lookup_attempts = lookup_attempts
        self.lookup_delay = lookup_delay
        self._sleep = sleep
        self._now = now

    @property
    def headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{self.api_url}{path}"
        try:
            response = self.client.request(
                method,
                url,
                params=params,
                json=json,
                headers=self.headers,
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteExecutorError(
                f"GitHub API {method} {path} failed: "
                f"{e.response.status_code} {e.response.reason_phrase}",
                code="http_error",
            ) from e
        except httpx.RequestError as e:
            raise RemoteExecutorError(
                f"Network error calling GitHub API {method} {path}: {e}",
                code="network_error",
            ) from e
        return response

    def _job_from_run(self, repo: str, run: dict[str, Any]) -> RemoteJob:
        job_id = str(run["id"])
        return RemoteJob(
            job_id=job_id,
            status=normalize_status(run.get("status")),
            conclusion=run.get("conclusion"),
            url=run.get("html_url") or self.job_url(repo, job_id),
            repo=repo,
        )

    def job_url(self, repo: str, job_id: str) -> str:
        return f"{self.web_url}/{repo}/actions/runs/{job_id}"

    def submit(
        self,
        repo: str,
        device_id: str,
        toolchain_version: str,
        release_channel: str,
    ) -> RemoteJob:
        """Dispatch the build workflow and return the created run.

        Raises:
            RemoteExecutorError: If dispatch fails or the run cannot be found.
        """
        submitted_at = self._now() - CLOCK_SKEW
        payload = {
            "ref": self.ref,
            "inputs": {
                "device_id": device_id,
                "openwrt_version": toolchain_version,
                "release_channel": release_channel,
            },
            "return_run_details": True,
        }
        logger.info(
            "Dispatching %s on %s@%s for %s", self.workflow, repo, self.ref, device_id
        )
        response = self._request(
            "POST",
            f"/repos/{repo}/actions/workflows/{self.workflow}/dispatches",
            json=payload,
        )

        if response.status_code == 200 and response.content:
            run_id = response.json().get("workflow_run_id")
            if run_id is not None:
                logger.info("Workflow run %s created", run_id)
                return RemoteJob(
                    job_id=str(run_id),
                    status=RemoteJobStatus.QUEUED.value,
                    url=self.job_url(repo, str(run_id)),
                    repo=repo,
                )

        return self._find_dispatched_run(repo, submitted_at)

    def _find_dispatched_run(self, repo: str, submitted_at: datetime) -> RemoteJob:
        params = {
            "event": "workflow_dispatch",
            "branch": self.ref,
            "per_page": 10,
        }
        for attempt in range(1, self.lookup_attempts + 1):
            response = self._request(
                "GET",
                f"/repos/{repo}/actions/workflows/{self.workflow}/runs",
                params=params,
            )
            for run in response.json().get("workflow_runs", []):
                created_at = run.get("created_at")
                if created_at and _parse_timestamp(created_at) >= submitted_at:
                    job = self._job_from_run(repo, run)
                    logger.info("Found workflow run %s", job.job_id)
                    return job

            logger.debug(
                "Dispatched run not visible yet (attempt %d/%d)",
                attempt,
                self.lookup_attempts,
            )
            if attempt < self.lookup_attempts:
                self._sleep(self.lookup_delay)

        raise RemoteExecutorError(
            f"Could not find the dispatched run of {self.workflow} in {repo}",
            code="run_not_found",
        )

    def get_status(self, repo: str, job_id: str) -> RemoteJob:
        response = self._request("GET", f"/repos/{repo}/actions/runs/{job_id}")
        return self._job_from_run(repo, response.json())

    def download_artifacts(self, repo: str, job_id: str, dest: Path) -> list[Path]:
        """Download and extract every artifact of a run.

        Each artifact is extracted into dest/<artifact name>.

        Returns:
            Paths of all extracted files.

        Raises:
            RemoteExecutorError: If listing, download or extraction fails.
        """
        response = self._request(
            "GET",
            f"/repos/{repo}/actions/runs/{job_id}/artifacts",
            params={"per_page": 100},
        )
        artifacts = response.json().get("artifacts", [])
        if not artifacts:
            logger.warning("Run %s has no artifacts", job_id)

        dest.mkdir(parents=True, exist_ok=True)
        files: list[Path] = []
        for artifact in artifacts:
            name = artifact["name"]
            if artifact.get("expired"):
                logger.warning("Artifact %s of run %s has expired", name, job_id)
                continue
            files.extend(
                self._download_artifact(artifact["archive_download_url"], dest / name)
            )
        logger.info("Downloaded %d file(s) from run %s to %s", len(files), job_id, dest)
        return files

    def _download_artifact(self, url: str, dest_dir: Path) -> list[Path]:
        logger.info("Downloading artifact %s", dest_dir.name)
        dest_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=dest_dir.parent) as tmp:
            archive_path = Path(tmp) / "artifact.zip"
            try:
                with self.client.stream(
                    "GET",
                    url,
                    headers=self.headers,
                    timeout=ARTIFACT_DOWNLOAD_TIMEOUT,
                    follow_redirects=True,
                ) as response:
                    response.raise_for_status()
                    with archive_path.open("wb") as f:
                        for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                            f.write(chunk)
            except httpx.HTTPStatusError as e:
                raise RemoteExecutorError(
                    f"HTTP error downloading artifact {dest_dir.name}: "
                    f"{e.response.status_code}",
                    code="http_error",
                ) from e
            except httpx.RequestError as e:
                raise RemoteExecutorError(
                    f"Network error downloading artifact {dest_dir.name}: {e}",
                    code="network_error",
                ) from e
            return extract_zip(archive_path, dest_dir)


__all__ = [
    "GITHUB_API_URL",
    "GitHubActionsExecutor",
    "RemoteExecutor",
    "RemoteExecutorError",
    "extract_zip",
    "normalize_status",
]
