from __future__ import annotations

import os
import selectors
import subprocess
import time
from collections.abc import Mapping, Sequence
from typing import IO, Optional

import psutil
import structlog
from pydantic import BaseModel, Field

from .framing import encode_command

logger = structlog.get_logger()

DEFAULT_SHUTDOWN_COMMAND = "quit"
DEFAULT_READ_CHUNK_SIZE = 64 * 1024


class ChannelError(Exception):
    """Worker channel error."""

    pass


class SpawnError(ChannelError):
    """The worker executable could not be found or started."""

    def __init__(self, executable_path: str, reason: str) -> None:
        super().__init__(f"Cannot start worker {executable_path!r}: {reason}")
        self.executable_path = executable_path


class TerminationError(ChannelError):
    """The worker could not be confirmed as cleanly terminated."""

    def __init__(self, message: str, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class WorkerStats(BaseModel):
    pid: int = Field(description="Worker process id")
    returncode: Optional[int] = Field(default=None, description="Exit status once reaped")
    memory_usage: int = Field(default=0, description="Resident set size in bytes")
    cpu_percent: float = Field(default=0.0, description="CPU usage since the last sample")


class ProcessChannel:
    """Owns one worker process and the byte buffers around its pipes.

    All pipe I/O is non-blocking. Bytes to send are queued with
    ``queue_input`` and written by ``pump_nonblocking``; bytes the worker
    produced accumulate until the owner collects them with
    ``take_output`` and ``take_errors``.
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
    ) -> None:
        self._process = process
        self._read_chunk_size = read_chunk_size
        self._input = bytearray()
        self._output = bytearray()
        self._errors = bytearray()
        self._stdin_open = True
        self._stdin_registered = False
        self._stdout_eof = False
        self._stderr_eof = False
        self._closed = False
        self._psutil_process: Optional[psutil.Process] = None

        if process.stdin is None or process.stdout is None or process.stderr is None:
            raise ValueError("Worker process needs stdin, stdout and stderr pipes")
        for pipe in (process.stdin, process.stdout, process.stderr):
            os.set_blocking(pipe.fileno(), False)

        self._selector = selectors.DefaultSelector()
        self._selector.register(process.stdout, selectors.EVENT_READ)
        self._selector.register(process.stderr, selectors.EVENT_READ)

    @classmethod
    def spawn(
        cls,
        executable_path: str | os.PathLike[str],
        args: Sequence[str] = (),
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str | os.PathLike[str]] = None,
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
    ) -> ProcessChannel:
        """Start the worker with all three standard streams piped.

        Args:
            executable_path: Path of the worker program
            args: Extra command-line arguments
            env: Variables added to the inherited environment
            cwd: Working directory for the worker
            read_chunk_size: Maximum bytes read per ``os.read`` call

        Raises:
            SpawnError: If the executable is missing or cannot be executed
        """
        command = [os.fspath(executable_path), *(str(a) for a in args)]
        environment = {**os.environ, **env} if env is not None else None

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=environment,
                cwd=cwd,
                bufsize=0,
            )
        except OSError as e:
            logger.error("Failed to spawn worker", command=command, error=str(e))
            raise SpawnError(command[0], e.strerror or str(e)) from e

        logger.info("Worker spawned", pid=process.pid, command=command)
        return cls(process, read_chunk_size=read_chunk_size)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.poll()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_alive(self) -> bool:
        """True while the worker runs and its stdout has not reached EOF.

        A worker that already exited counts as alive until the output it
        left in the pipe has been read, so trailing lines are not lost.
        """
        if self._closed or self._stdout_eof:
            return False
        if self._process.poll() is None:
            return True
        return self._stdout_readable()

    @property
    def input_buffer(self) -> bytes:
        return bytes(self._input)

    @property
    def output_buffer(self) -> bytes:
        return bytes(self._output)

    @property
    def error_buffer(self) -> bytes:
        return bytes(self._errors)

    def queue_input(self, data: bytes) -> None:
        """Append bytes for the worker's stdin; nothing is written yet."""
        self._input.extend(data)

    def take_output(self) -> bytes:
        data = bytes(self._output)
        self._output.clear()
        return data

    def take_errors(self) -> bytes:
        data = bytes(self._errors)
        self._errors.clear()
        return data

    def pump_nonblocking(self) -> None:
        """Write what stdin accepts and read what stdout/stderr hold, without waiting."""
        if self._closed:
            return

        self._write_pending()
        if not self._stdout_eof:
            self._stdout_eof = self._read_available(self._process.stdout, self._output)
        if not self._stderr_eof:
            self._stderr_eof = self._read_available(self._process.stderr, self._errors)

    def wait_ready(self, timeout: Optional[float]) -> bool:
        """Block until a pipe needs pumping or the timeout elapses.

        Returns:
            True if stdout/stderr became readable or stdin writable for
            pending input, False on timeout
        """
        if self._closed:
            return False

        self._watch_stdin(bool(self._input) and self._stdin_open)
        if not self._selector.get_map():
            if timeout:
                time.sleep(timeout)
            return False
        return bool(self._selector.select(timeout))

    def terminate(
        self,
        shutdown_command: str = DEFAULT_SHUTDOWN_COMMAND,
        timeout: float = 5.0,
        encoding: str = "utf-8",
    ) -> int:
        """Ask the worker to quit and wait for it to exit.

        Pending input is flushed first, then the shutdown command, then
        stdin is closed. Output keeps being drained while waiting so the
        worker never blocks on a full pipe.

        Returns:
            The worker's exit status

        Raises:
            TerminationError: If the worker does not exit within ``timeout``
                or exits with a non-zero status
        """
        if self._closed:
            return self._process.returncode if self._process.returncode is not None else 0

        pid = self._process.pid
        if self._stdin_open:
            self.queue_input(encode_command(shutdown_command, encoding=encoding))

        deadline = time.monotonic() + timeout
        while True:
            self.pump_nonblocking()
            if self._stdin_open and not self._input:
                self._close_stdin()
            if self._process.poll() is not None:
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self.wait_ready(min(remaining, 0.05))

        returncode = self._process.poll()
        if returncode is None:
            logger.error("Worker did not exit", pid=pid, timeout=timeout)
            self.close()
            raise TerminationError(f"Worker {pid} did not exit within {timeout}s")

        self.pump_nonblocking()
        self.close()

        errors = self.take_errors()
        if errors:
            logger.warning("worker_stderr", pid=pid, data=errors.decode(encoding, errors="replace"))
        if self._output:
            logger.debug("Discarding output after shutdown", pid=pid, bytes=len(self._output))

        if returncode != 0:
            raise TerminationError(
                f"Worker {pid} exited with status {returncode}", returncode=returncode
            )

        logger.info("Worker terminated", pid=pid, returncode=returncode)
        return returncode

    def close(self, grace: float = 0.0) -> None:
        """Release the pipes and reap the worker.

        Args:
            grace: Seconds to let a still-running worker exit on its own
                before it is killed
        """
        if self._closed:
            return
        self._closed = True

        if self._process.poll() is None and grace > 0:
            try:
                self._process.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                pass
        if self._process.poll() is None:
            logger.warning("Killing running worker", pid=self._process.pid, grace=grace)
            self._process.kill()
        self._process.wait()

        self._selector.close()
        for pipe in (self._process.stdin, self._process.stdout, self._process.stderr):
            if pipe is not None:
                pipe.close()
        self._stdin_open = False
        logger.debug("Channel closed", pid=self._process.pid, returncode=self._process.returncode)

    def stats(self) -> WorkerStats:
        """Sample resource usage of the worker."""
        stats = WorkerStats(pid=self._process.pid, returncode=self._process.poll())
        if stats.returncode is not None:
            return stats
        try:
            if self._psutil_process is None:
                self._psutil_process = psutil.Process(self._process.pid)
            with self._psutil_process.oneshot():
                stats.memory_usage = self._psutil_process.memory_info().rss
                stats.cpu_percent = self._psutil_process.cpu_percent(interval=None)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug("Cannot sample worker", pid=self._process.pid, error=str(e))
        return stats

    def _write_pending(self) -> None:
        if not self._input or not self._stdin_open:
            return

        assert self._process.stdin is not None
        fd = self._process.stdin.fileno()
        total = 0
        while self._input:
            try:
                written = os.write(fd, self._input)
            except BlockingIOError:
                break
            except BrokenPipeError:
                logger.warning(
                    "Worker stdin closed",
                    pid=self._process.pid,
                    pending=len(self._input),
                )
                self._close_stdin()
                break
            del self._input[:written]
            total += written

        if total:
            logger.debug(
                "Wrote to worker", pid=self._process.pid, bytes=total, pending=len(self._input)
            )

    def _read_available(self, pipe: Optional[IO[bytes]], sink: bytearray) -> bool:
        """Read until the pipe would block. Returns True at EOF."""
        assert pipe is not None
        fd = pipe.fileno()
        while True:
            try:
                chunk = os.read(fd, self._read_chunk_size)
            except BlockingIOError:
                return False
            if not chunk:
                self._selector.unregister(pipe)
                return True
            sink.extend(chunk)
            if len(chunk) < self._read_chunk_size:
                # Drained for now; a chatty worker must not pin us in this loop
                return False

    def _stdout_readable(self) -> bool:
        for key, _ in self._selector.select(0):
            if key.fileobj is self._process.stdout:
                return True
        return False

    def _watch_stdin(self, enabled: bool) -> None:
        if enabled == self._stdin_registered:
            return
        if enabled:
            self._selector.register(self._process.stdin, selectors.EVENT_WRITE)
        else:
            self._selector.unregister(self._process.stdin)
        self._stdin_registered = enabled

    def _close_stdin(self) -> None:
        if not self._stdin_open:
            return
        self._watch_stdin(False)
        self._stdin_open = False
        assert self._process.stdin is not None
        self._process.stdin.close()
