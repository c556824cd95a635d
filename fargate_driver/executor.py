"""
Remote execution of job scripts over SSH.

The script received from the job-runner is executed as a single remote command
on the task's container while its output is streamed back to the local
stdout/stderr. When the job is cancelled the remote process receives SIGINT and
the driver returns without waiting for it to exit.
"""

import asyncio
import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import IO, Optional

import asyncssh

from .errors import DriverError, ErrorKind, wrap
from .keys import parse_private_key
from .signals import CancelContext

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22

CHUNK_SIZE = 32 * 1024


@dataclass(frozen=True)
class ExecutionTarget:
    """Where and as whom the script is executed."""

    hostname: str
    port: int
    username: str
    private_key: bytes

    @property
    def address(self) -> str:
        return f"{self.hostname}:{self.port}"


class Executor(ABC):
    """Abstract base class for remote script execution."""

    @abstractmethod
    def execute(self, ctx: CancelContext, target: ExecutionTarget, script: bytes):
        """
        Execute the script on the target.

        Returns normally when the script succeeds or ctx is cancelled.

        Raises:
            DriverError: (BUILD_FAILURE) if the script fails, other kinds if
                the target can't be reached
        """
        pass


class SSHExecutor(Executor):
    """Executes scripts through an SSH session authenticated by a private key."""

    def __init__(
        self,
        stdout: Optional[IO[bytes]] = None,
        stderr: Optional[IO[bytes]] = None,
        connect=asyncssh.connect,
    ):
        self.stdout = stdout
        self.stderr = stderr
        self.connect = connect

    def execute(self, ctx: CancelContext, target: ExecutionTarget, script: bytes):
        key = parse_private_key(target.private_key)
        asyncio.run(self._execute(ctx, target, key, script))

    async def _execute(self, ctx, target: ExecutionTarget, key, script: bytes):
        logger.debug(f"Connecting to {target.address} as {target.username!r}")
        try:
            conn = await self.connect(
                target.hostname,
                port=target.port,
                username=target.username,
                client_keys=[key],
                # Tasks are ephemeral, their host keys can't be known beforehand
                known_hosts=None,
            )
        except (OSError, asyncssh.Error) as e:
            raise wrap(
                f"connecting to {target.address!r} as user {target.username!r}",
                e,
                ErrorKind.REMOTE_FAILURE,
            ) from e

        try:
            await self._run(ctx, conn, script)
        except BaseException:
            await self._disconnect(conn, failed=True)
            raise
        await self._disconnect(conn, failed=False)

    async def _run(self, ctx: CancelContext, conn, script: bytes):
        # The exec request carries the script bytes unchanged
        try:
            process = await conn.create_process(script, encoding=None)
        except (OSError, asyncssh.Error) as e:
            raise wrap("starting remote command", e, ErrorKind.REMOTE_FAILURE) from e

        loop = asyncio.get_running_loop()
        cancelled = loop.create_future()

        def on_cancel():
            # Runs on the signal handler's thread, possibly after the loop closed
            try:
                loop.call_soon_threadsafe(_resolve, cancelled)
            except RuntimeError:
                logger.debug("Cancellation arrived after remote command finished")

        ctx.add_callback(on_cancel)
        finished = asyncio.ensure_future(self._stream(process))
        try:
            done, _ = await asyncio.wait(
                {finished, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
            if finished not in done:
                logger.warning("Job was cancelled; interrupting remote command")
                try:
                    process.send_signal("INT")
                except (OSError, asyncssh.Error) as e:
                    raise wrap(
                        "sending interrupt to remote command", e, ErrorKind.REMOTE_FAILURE
                    ) from e
                return
            finished.result()
        finally:
            ctx.remove_callback(on_cancel)
            for future in (finished, cancelled):
                if not future.done():
                    future.cancel()

    async def _stream(self, process):
        stdout = self.stdout or sys.stdout.buffer
        stderr = self.stderr or sys.stderr.buffer
        try:
            await asyncio.gather(
                _pump(process.stdout, stdout), _pump(process.stderr, stderr)
            )
            await process.wait_closed()
        except (OSError, asyncssh.Error) as e:
            raise wrap("executing remote command", e, ErrorKind.REMOTE_FAILURE) from e

        exit_signal = process.exit_signal
        if exit_signal:
            raise DriverError(
                f"remote command terminated by signal {exit_signal[0]}",
                ErrorKind.BUILD_FAILURE,
            )
        exit_status = process.exit_status
        if exit_status is None:
            raise DriverError(
                "remote command exited without reporting a status",
                ErrorKind.REMOTE_FAILURE,
            )
        if exit_status != 0:
            raise DriverError(
                f"remote command exited with status {exit_status}",
                ErrorKind.BUILD_FAILURE,
            )
        logger.debug("Remote command completed successfully")

    async def _disconnect(self, conn, failed: bool):
        try:
            conn.close()
            await conn.wait_closed()
        except (OSError, asyncssh.Error) as e:
            if failed:
                logger.warning(f"Error while closing SSH connection was discarded: {e}")
                return
            raise wrap("closing SSH connection", e, ErrorKind.REMOTE_FAILURE) from e


async def _pump(reader, out: IO[bytes]):
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            break
        out.write(chunk)
        out.flush()


def _resolve(future: asyncio.Future):
    if not future.done():
        future.set_result(None)
