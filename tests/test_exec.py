import json
from unittest.mock import MagicMock, patch

import pytest

from che_operator.crds.exec import ExecResult, _parse_returncode, exec_in_pod


class FakeStream:
    """WSClient look-alike that yields its output over a few update rounds."""

    def __init__(self, stdout=(), stderr=(), error=""):
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.error = error
        self.written = []
        self.closed = False

    def is_open(self):
        return not self.closed and bool(self.stdout or self.stderr or self.error)

    def update(self, timeout=0):
        pass

    def peek_stdout(self):
        return bool(self.stdout)

    def read_stdout(self):
        return self.stdout.pop(0)

    def peek_stderr(self):
        return bool(self.stderr)

    def read_stderr(self):
        return self.stderr.pop(0)

    def peek_channel(self, channel):
        return bool(self.error)

    def read_channel(self, channel):
        error, self.error = self.error, ""
        return error

    def write_stdin(self, data):
        self.written.append(data)

    def close(self):
        self.closed = True


def exit_status(code):
    return json.dumps(
        {
            "status": "Failure",
            "reason": "NonZeroExitCode",
            "details": {"causes": [{"reason": "ExitCode", "message": str(code)}]},
        }
    )


@pytest.mark.parametrize(
    "error,expected",
    [
        ("", 0),
        (json.dumps({"status": "Success"}), 0),
        (exit_status(123), 123),
        (json.dumps({"status": "Failure", "details": {}}), 1),
    ],
)
def test_parse_returncode(error, expected):
    assert _parse_returncode(error) == expected


def test_exec_collects_output():
    fake = FakeStream(stdout=["hello ", "world\n"], stderr=["warn\n"], error=json.dumps({"status": "Success"}))
    core_v1 = MagicMock()

    with patch("che_operator.crds.exec.stream", return_value=fake) as stream:
        result = exec_in_pod(core_v1, "postgres-1", "eclipse-che", ["echo", "hello"], container="postgres")

    assert result == ExecResult(stdout="hello world\n", stderr="warn\n", returncode=0)
    assert result.output == "hello world\nwarn\n"
    assert stream.call_args.kwargs["container"] == "postgres"
    assert stream.call_args.kwargs["stdin"] is False
    assert fake.closed


def test_exec_writes_stdin_in_chunks():
    fake = FakeStream(error=exit_status(2))
    payload = "x" * (64 * 1024 + 10)

    with patch("che_operator.crds.exec.stream", return_value=fake):
        result = exec_in_pod(MagicMock(), "pod", "ns", ["sh", "-c", "cat > /tmp/f"], stdin=payload)

    assert [len(chunk) for chunk in fake.written] == [64 * 1024, 10]
    assert result.returncode == 2


def test_exec_times_out():
    fake = FakeStream(stdout=["never ends"])
    fake.read_stdout = lambda: "."

    with patch("che_operator.crds.exec.stream", return_value=fake), patch(
        "che_operator.crds.exec.time"
    ) as clock:
        clock.time.side_effect = [0, 1, 20]
        with pytest.raises(TimeoutError, match="did not finish within 10 seconds"):
            exec_in_pod(MagicMock(), "pod", "ns", ["sleep", "100"], timeout=10)

    assert fake.closed
