"""
Thin wrapper around the restic command line.

Every command runs with a wall-clock timeout and the child is killed when
it expires.
"""
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..errors import ResticError, ResticTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15 * 60
DEFAULT_RESTORE_TIMEOUT = 60 * 60

LATEST_SNAPSHOT = "latest"

REPOSITORY_MISSING_MARKER = "Is there a repository at the following location?"
ALREADY_INITIALIZED_MARKERS = ("already initialized", "config file already exists")

SNAPSHOT_ID_RE = re.compile(r"snapshot ([0-9a-f]+) saved")
PROCESSED_RE = re.compile(r"processed (.*)")


@dataclass
class SnapshotStat:
    id: str
    info: str = ""


def parse_backup_output(output: str) -> SnapshotStat:
    match = SNAPSHOT_ID_RE.search(output)
    if not match:
        raise ResticError("failed to read snapshot ID from restic output", output=output)
    info = PROCESSED_RE.search(output)
    return SnapshotStat(id=match.group(1), info=info.group(1).strip() if info else "")


def _text(value) -> str:
    if not value:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def password_command(password: str) -> str:
    quoted = password.replace("'", "'\\''")
    return f"echo '{quoted}'"


class ResticClient:
    def __init__(
        self,
        repo_url: str,
        repo_password: str,
        extra_env: Optional[Dict[str, str]] = None,
        extra_args: Optional[List[str]] = None,
        timeout: int = DEFAULT_TIMEOUT,
        restore_timeout: int = DEFAULT_RESTORE_TIMEOUT,
        binary: str = "restic",
    ):
        self.repo_url = repo_url
        self.repo_password = repo_password
        self.extra_env = extra_env or {}
        self.extra_args = extra_args or []
        self.timeout = timeout
        self.restore_timeout = restore_timeout
        self.binary = binary

    def command(self, *args: str) -> List[str]:
        return [self.binary, "--repo", self.repo_url, *self.extra_args, *args]

    def env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["RESTIC_PASSWORD_COMMAND"] = password_command(self.repo_password)
        env.update(self.extra_env)
        return env

    def _run(
        self, *args: str, cwd: Optional[str] = None, timeout: Optional[int] = None
    ) -> subprocess.CompletedProcess:
        timeout = timeout or self.timeout
        try:
            return subprocess.run(
                self.command(*args),
                capture_output=True,
                text=True,
                env=self.env(),
                cwd=cwd,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            output = "".join(_text(part) for part in (e.stdout, e.stderr))
            raise ResticTimeoutError(
                f"restic {args[0]} did not finish within {timeout} seconds", output=output
            ) from e

    @staticmethod
    def _output(result: subprocess.CompletedProcess) -> str:
        return (result.stdout or "") + (result.stderr or "")

    def init_repository(self) -> None:
        result = self._run("init")
        output = self._output(result)
        if result.returncode == 0:
            logger.info("Restic repository initialized")
            return
        if any(marker in output for marker in ALREADY_INITIALIZED_MARKERS):
            logger.info("Restic repository is already initialized")
            return
        raise ResticError(f"failed to initialize backup repository: {output.strip()}", output=output)

    def is_repository_exist(self) -> bool:
        result = self._run("snapshots")
        output = self._output(result)
        if result.returncode == 0:
            return True
        if REPOSITORY_MISSING_MARKER in output:
            return False
        raise ResticError(f"failed to check backup repository: {output.strip()}", output=output)

    def check_repository(self) -> None:
        result = self._run("check")
        if result.returncode != 0:
            output = self._output(result)
            raise ResticError(f"backup repository check failed: {output.strip()}", output=output)

    def send_snapshot(self, path: str) -> SnapshotStat:
        """Backs up the content of ``path`` as a new snapshot."""
        result = self._run("backup", ".", cwd=path)
        output = self._output(result)
        if result.returncode != 0:
            raise ResticError(f"failed to send backup snapshot: {output.strip()}", output=output)
        stat = parse_backup_output(output)
        logger.info(f"Snapshot {stat.id} saved, processed {stat.info}")
        return stat

    def download_snapshot(self, snapshot_id: str, path: str) -> None:
        os.makedirs(path, mode=0o755, exist_ok=True)
        result = self._run("restore", snapshot_id, "--target", path, timeout=self.restore_timeout)
        if result.returncode != 0:
            output = self._output(result)
            raise ResticError(
                f"failed to download snapshot {snapshot_id}: {output.strip()}", output=output
            )

    def download_last_snapshot(self, path: str) -> None:
        self.download_snapshot(LATEST_SNAPSHOT, path)
