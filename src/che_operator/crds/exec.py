import json
import time
from dataclasses import dataclass
from typing import List, Optional

from kubernetes import client
from kubernetes.stream import stream

STDIN_CHUNK_SIZE = 64 * 1024


@dataclass
class ExecResult:
    """
    Result of a command executed in a pod, similar to subprocess.CompletedProcess.
    """

    stdout: str
    stderr: str
    returncode: int

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


def _parse_returncode(error: str) -> int:
    """Reads the exit code out of the status document sent on channel 3."""
    if not error:
        return 0
    status = json.loads(error)
    if status.get("status") != "Failure":
        return 0
    details = status.get("details", {})
    for cause in details.get("causes", []):
        if cause.get("reason") == "ExitCode":
            return int(cause.get("message", 1))
    return 1


def exec_in_pod(
    core_v1: client.CoreV1Api,
    pod_name: str,
    namespace: str,
    command: List[str],
    container: Optional[str] = None,
    stdin: Optional[str] = None,
    timeout: int = 600,
) -> ExecResult:
    """
    Runs a command in a pod and waits for it to exit.

    Args:
        core_v1: Kubernetes CoreV1Api client
        pod_name: Name of the pod
        namespace: Namespace of the pod
        command: Command and arguments
        container: Container name, required for multi-container pods
        stdin: Text written to the command's standard input
        timeout: Seconds after which the stream is closed

    Returns:
        An ExecResult with stdout, stderr and the exit code.
    """
    kwargs = {}
    if container:
        kwargs["container"] = container

    api_response = stream(
        core_v1.connect_get_namespaced_pod_exec,
        pod_name,
        namespace,
        command=command,
        stderr=True,
        stdin=stdin is not None,
        stdout=True,
        tty=False,
        _preload_content=False,
        **kwargs,
    )

    if stdin is not None:
        for start in range(0, len(stdin), STDIN_CHUNK_SIZE):
            api_response.write_stdin(stdin[start:start + STDIN_CHUNK_SIZE])

    stdout = ""
    stderr = ""
    error = ""
    deadline = time.time() + timeout
    while api_response.is_open():
        if time.time() > deadline:
            api_response.close()
            raise TimeoutError(
                f"Command {command[0]} in pod {pod_name} did not finish within {timeout} seconds."
            )
        api_response.update(timeout=1)
        if api_response.peek_stdout():
            stdout += api_response.read_stdout()
        if api_response.peek_stderr():
            stderr += api_response.read_stderr()
        if api_response.peek_channel(3):
            error += api_response.read_channel(3)

    api_response.close()

    return ExecResult(stdout=stdout, stderr=stderr, returncode=_parse_returncode(error))
