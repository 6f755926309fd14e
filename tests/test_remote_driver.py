"""Tests for remote/driver.py module.

Uses a scripted executor and a fake clock so polling runs instantly.
"""

from pathlib import Path

import pytest

from tollgate_build.builds.artifacts import ArtifactNotFoundError
from tollgate_build.remote.driver import (
    RemoteBuildDriver,
    RemoteJobFailedError,
    RemoteProtocolError,
    RemoteTimeoutError,
)
from tollgate_build.types import RemoteJob

REPO = "jpgaviria/tollgate-os"


class FakeTime:
    """Clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def clock(self) -> float:
        return self.now


class ScriptedExecutor:
    """RemoteExecutor returning a fixed sequence of job snapshots."""

    def __init__(self, statuses, conclusion=None, files=None):
        self.statuses = list(statuses)
        self.conclusion = conclusion
        self.files = files or {}
        self.status_calls = 0
        self.download_calls: list[tuple[str, str, Path]] = []

    def _job(self, index: int) -> RemoteJob:
        status = self.statuses[min(index, len(self.statuses) - 1)]
        conclusion = self.conclusion if status == "completed" else None
        return RemoteJob(job_id="42", status=status, conclusion=conclusion)

    def submit(self, repo, device_id, toolchain_version, release_channel):
        self.submitted = (repo, device_id, toolchain_version, release_channel)
        return self._job(0)

    def get_status(self, repo, job_id):
        self.status_calls += 1
        return self._job(self.status_calls)

    def download_artifacts(self, repo, job_id, dest):
        self.download_calls.append((repo, job_id, dest))
        written = []
        for rel, content in self.files.items():
            path = dest / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
            written.append(path)
        return written

    def job_url(self, repo, job_id):
        return f"https://github.com/{repo}/actions/runs/{job_id}"


def make_driver(executor) -> tuple[RemoteBuildDriver, FakeTime]:
    fake_time = FakeTime()
    return RemoteBuildDriver(executor, sleep=fake_time.sleep, clock=fake_time.clock), fake_time


class TestSubmitAndWait:
    """Tests for RemoteBuildDriver.submit_and_wait."""

    def test_success(self):
        """Should poll until completion and return the job."""
        executor = ScriptedExecutor(
            ["queued", "in_progress", "completed"], conclusion="success"
        )
        driver, fake_time = make_driver(executor)

        job = driver.submit_and_wait(
            REPO, "glinet_gl-mt6000", "24.10.5", "stable", poll_interval=30
        )

        assert job.succeeded is True
        assert job.repo == REPO
        assert executor.submitted == (REPO, "glinet_gl-mt6000", "24.10.5", "stable")
        assert executor.status_calls == 2
        assert fake_time.sleeps == [30, 30]

    def test_scenario_d_failure(self):
        """A failed job raises with its id and never downloads."""
        executor = ScriptedExecutor(
            ["queued", "in_progress", "completed"], conclusion="failure"
        )
        driver, _ = make_driver(executor)

        with pytest.raises(RemoteJobFailedError) as exc_info:
            driver.submit_and_wait(REPO, "glinet_gl-mt6000", "24.10.5", "stable")

        assert exc_info.value.job_id == "42"
        assert exc_info.value.conclusion == "failure"
        assert exc_info.value.url == f"https://github.com/{REPO}/actions/runs/42"
        assert "42" in str(exc_info.value)
        assert executor.download_calls == []

    def test_cancelled_is_failure(self):
        """Any conclusion other than success counts as failure."""
        executor = ScriptedExecutor(["completed"], conclusion="cancelled")
        driver, fake_time = make_driver(executor)

        with pytest.raises(RemoteJobFailedError):
            driver.submit_and_wait(REPO, "d", "24.10.5", "stable")
        assert fake_time.sleeps == []

    def test_unknown_status(self):
        """Should stop on an unrecognized status."""
        executor = ScriptedExecutor(["queued", "exploded"])
        driver, _ = make_driver(executor)

        with pytest.raises(RemoteProtocolError) as exc_info:
            driver.submit_and_wait(REPO, "d", "24.10.5", "stable")

        assert "exploded" in str(exc_info.value)
        assert exc_info.value.code == "remote_protocol"

    def test_timeout(self):
        """Should give up after max_wait seconds."""
        executor = ScriptedExecutor(["in_progress"])
        driver, fake_time = make_driver(executor)

        with pytest.raises(RemoteTimeoutError) as exc_info:
            driver.submit_and_wait(
                REPO, "d", "24.10.5", "stable", poll_interval=10, max_wait=35
            )

        assert exc_info.value.job_id == "42"
        assert fake_time.sleeps == [10, 10, 10, 10]
        assert executor.status_calls == 4


class TestDownloadArtifacts:
    """Tests for RemoteBuildDriver.download_artifacts."""

    def test_locates_firmware(self, tmp_path):
        """Should download into run-<id> and return the sysupgrade image."""
        name = "openwrt-24.10.5-mediatek-filogic-glinet_gl-mt6000-squashfs-sysupgrade.bin"
        executor = ScriptedExecutor(
            ["completed"],
            conclusion="success",
            files={f"firmware/{name}": b"fw" * 10, "firmware/sha256sums": b""},
        )
        driver, _ = make_driver(executor)
        job = RemoteJob(job_id="42", status="completed", conclusion="success", repo=REPO)

        artifact = driver.download_artifacts(job, tmp_path)

        assert executor.download_calls == [(REPO, "42", tmp_path / "run-42")]
        assert artifact.path == tmp_path / "run-42" / "firmware" / name
        assert artifact.size_bytes == 20

    def test_no_matching_file(self, tmp_path):
        """Should raise when the artifacts hold no firmware image."""
        executor = ScriptedExecutor(
            ["completed"], conclusion="success", files={"logs/build.log": b"log"}
        )
        driver, _ = make_driver(executor)
        job = RemoteJob(job_id="42", status="completed", conclusion="success", repo=REPO)

        with pytest.raises(ArtifactNotFoundError):
            driver.download_artifacts(job, tmp_path)

    def test_refuses_unsuccessful_job(self, tmp_path):
        """Should not download artifacts of a failed job."""
        executor = ScriptedExecutor(["completed"], conclusion="failure")
        driver, _ = make_driver(executor)
        job = RemoteJob(job_id="42", status="completed", conclusion="failure", repo=REPO)

        with pytest.raises(RemoteJobFailedError):
            driver.download_artifacts(job, tmp_path)
        assert executor.download_calls == []

    def test_requires_repo(self, tmp_path):
        """Should reject a job without a repository."""
        driver, _ = make_driver(ScriptedExecutor(["completed"], conclusion="success"))
        job = RemoteJob(job_id="42", status="completed", conclusion="success")

        with pytest.raises(ValueError):
            driver.download_artifacts(job, tmp_path)
