"""
Tests for the SSH execution engine with a fake asyncssh connection.
"""

import asyncio
import io
from unittest.mock import Mock

import asyncssh
import pytest

from fargate_driver.errors import DriverError, ErrorKind
from fargate_driver.executor import ExecutionTarget, SSHExecutor
from fargate_driver.signals import CancelContext


class FakeReader:
    """Returns the given chunks, then EOF or blocks forever."""

    def __init__(self, chunks, on_read=None, block=False):
        self.chunks = list(chunks)
        self.on_read = on_read
        self.block = block

    async def read(self, size):
        if self.on_read is not None:
            self.on_read()
        if self.chunks:
            return self.chunks.pop(0)
        if self.block:
            await asyncio.Event().wait()
        return b""


class FakeProcess:
    def __init__(self, stdout, stderr, exit_status=0, exit_signal=None):
        self.stdout = stdout
        self.stderr = stderr
        self.exit_status = exit_status
        self.exit_signal = exit_signal
        self.send_signal = Mock()

    async def wait_closed(self):
        pass


class FakeConnection:
    def __init__(self, process, close_error=None):
        self.process = process
        self.close_error = close_error
        self.commands = []
        self.closed = False

    async def create_process(self, command, encoding=None):
        self.commands.append((command, encoding))
        return self.process

    def close(self):
        self.closed = True

    async def wait_closed(self):
        if self.close_error is not None:
            raise self.close_error


@pytest.fixture(scope="module")
def private_key():
    key = asyncssh.generate_private_key("ssh-rsa", key_size=2048)
    return key.export_private_key("pkcs1-pem")


class TestSSHExecutor:
    """Test script execution, output streaming and cancellation."""

    @pytest.fixture(autouse=True)
    def setup(self, private_key):
        self.stdout = io.BytesIO()
        self.stderr = io.BytesIO()
        self.ctx = CancelContext()
        self.target = ExecutionTarget(
            hostname="10.0.0.1", port=2222, username="root", private_key=private_key
        )

    def executor(self, conn):
        self.connect_calls = []

        async def connect(host, **kwargs):
            self.connect_calls.append((host, kwargs))
            return conn

        return SSHExecutor(stdout=self.stdout, stderr=self.stderr, connect=connect)

    def test_streams_output(self):
        process = FakeProcess(
            FakeReader([b"hello ", b"world\n"]), FakeReader([b"warning\n"])
        )
        conn = FakeConnection(process)

        self.executor(conn).execute(self.ctx, self.target, b"echo hello world\n")

        assert self.stdout.getvalue() == b"hello world\n"
        assert self.stderr.getvalue() == b"warning\n"
        assert conn.commands == [(b"echo hello world\n", None)]
        assert conn.closed

        host, kwargs = self.connect_calls[0]
        assert host == "10.0.0.1"
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "root"
        assert kwargs["known_hosts"] is None
        assert len(kwargs["client_keys"]) == 1

    def test_script_bytes_forwarded_unchanged(self):
        conn = FakeConnection(FakeProcess(FakeReader([]), FakeReader([])))

        self.executor(conn).execute(self.ctx, self.target, b"echo caf\xe9\n")

        assert conn.commands == [(b"echo caf\xe9\n", None)]

    def test_nonzero_exit_is_build_failure(self):
        process = FakeProcess(FakeReader([]), FakeReader([]), exit_status=1)
        conn = FakeConnection(process)

        with pytest.raises(DriverError, match="status 1") as exc_info:
            self.executor(conn).execute(self.ctx, self.target, b"false")
        assert exc_info.value.kind is ErrorKind.BUILD_FAILURE
        assert conn.closed

    def test_exit_by_signal_is_build_failure(self):
        process = FakeProcess(
            FakeReader([]),
            FakeReader([]),
            exit_status=None,
            exit_signal=("KILL", False, "", ""),
        )

        with pytest.raises(DriverError, match="signal KILL") as exc_info:
            self.executor(FakeConnection(process)).execute(
                self.ctx, self.target, b"sleep 100"
            )
        assert exc_info.value.kind is ErrorKind.BUILD_FAILURE

    def test_cancellation_interrupts_remote_command(self):
        process = FakeProcess(
            FakeReader([b"started\n"], on_read=self.ctx.cancel, block=True),
            FakeReader([], block=True),
        )
        conn = FakeConnection(process)

        self.executor(conn).execute(self.ctx, self.target, b"sleep 100")

        process.send_signal.assert_called_once_with("INT")
        assert conn.closed

    def test_invalid_key_fails_before_connecting(self):
        conn = FakeConnection(FakeProcess(FakeReader([]), FakeReader([])))
        executor = self.executor(conn)
        target = ExecutionTarget("10.0.0.1", 22, "root", b"garbage")

        with pytest.raises(DriverError) as exc_info:
            executor.execute(self.ctx, target, b"true")
        assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIAL
        assert self.connect_calls == []

    def test_connection_failure(self):
        async def connect(host, **kwargs):
            raise ConnectionRefusedError("refused")

        executor = SSHExecutor(stdout=self.stdout, stderr=self.stderr, connect=connect)

        with pytest.raises(DriverError, match="10.0.0.1:2222") as exc_info:
            executor.execute(self.ctx, self.target, b"true")
        assert exc_info.value.kind is ErrorKind.REMOTE_FAILURE
        assert "root" in str(exc_info.value)

    def test_disconnect_error_reported_alone(self):
        conn = FakeConnection(
            FakeProcess(FakeReader([]), FakeReader([])),
            close_error=OSError("reset"),
        )

        with pytest.raises(DriverError, match="closing SSH connection") as exc_info:
            self.executor(conn).execute(self.ctx, self.target, b"true")
        assert exc_info.value.kind is ErrorKind.REMOTE_FAILURE

    def test_disconnect_error_discarded_after_failure(self):
        conn = FakeConnection(
            FakeProcess(FakeReader([]), FakeReader([]), exit_status=2),
            close_error=OSError("reset"),
        )

        with pytest.raises(DriverError, match="status 2") as exc_info:
            self.executor(conn).execute(self.ctx, self.target, b"exit 2")
        assert exc_info.value.kind is ErrorKind.BUILD_FAILURE
