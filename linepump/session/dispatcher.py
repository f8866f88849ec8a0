from __future__ import annotations

import dataclasses
import os
import time
from collections import deque
from collections.abc import Callable
from types import TracebackType
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from ..protocol.events import UNKNOWN_FRAME, Event, child_died
from ..protocol.framing import LineBuffer, encode_command
from ..protocol.transport import ProcessChannel, TerminationError
from .config import DispatcherConfig
from .handlers import Code, Handler, HandlerTable

logger = structlog.get_logger()

Interceptor = Callable[[Event], Any]


class DispatcherInfo(BaseModel):
    """Snapshot of a dispatcher and its worker."""

    pid: int
    alive: bool
    created_at: float
    cycles: int = 0
    events_dispatched: int = 0
    last_code: int = 0
    returncode: Optional[int] = None
    memory_usage: int = Field(default=0, description="Worker resident set size in bytes")
    cpu_percent: float = 0.0


class Dispatcher:
    """Drives a line-protocol worker and routes its events to handlers.

    Handlers are called synchronously from ``pump_once`` with the
    dispatcher as their only argument. Inside a handler,
    ``current_event_code()`` and ``current_event_payload()`` describe the
    event being handled; outside of one they hold whatever event was
    dispatched last and are overwritten by the next dispatch. Commands
    queued from a handler are written on a later pump.

    Not thread-safe: callers sharing a dispatcher across threads must
    serialize every call.
    """

    def __init__(
        self,
        executable_path: str | os.PathLike[str] | None = None,
        *args: str,
        config: DispatcherConfig | None = None,
    ) -> None:
        config = config or DispatcherConfig()
        if executable_path is not None:
            config = dataclasses.replace(
                config,
                executable_path=os.fspath(executable_path),
                args=tuple(args) or config.args,
            )
        self._config = config
        self._handlers = HandlerTable()
        self._interceptors: list[Interceptor] = []
        self._lines = LineBuffer(encoding=config.encoding, max_line_size=config.max_line_size)
        self._pending: deque[Event] = deque()
        self._last_event: Optional[Event] = None
        self._created_at = time.time()
        self._cycles = 0
        self._events_dispatched = 0

        # Metrics collection
        self._metrics = {
            "bytes_written": 0,
            "bytes_read": 0,
            "unknown_frames": 0,
            "dropped_events": 0,
            "stderr_warnings": 0,
            "idle_waits": 0,
        }

        self._channel = ProcessChannel.spawn(
            config.executable_path,
            config.args,
            env=config.env,
            cwd=config.cwd,
            read_chunk_size=config.read_chunk_size,
        )

    @property
    def config(self) -> DispatcherConfig:
        return self._config

    @property
    def channel(self) -> ProcessChannel:
        return self._channel

    @property
    def handlers(self) -> HandlerTable:
        return self._handlers

    @property
    def pid(self) -> int:
        return self._channel.pid

    @property
    def is_alive(self) -> bool:
        return self._channel.is_alive

    @property
    def last_event(self) -> Optional[Event]:
        return self._last_event

    @property
    def pending_output(self) -> bytes:
        """Unterminated trailing line waiting for more output."""
        return self._lines.pending

    @property
    def pending_input(self) -> bytes:
        """Queued command bytes the worker has not accepted yet."""
        return self._channel.input_buffer

    @property
    def metrics(self) -> dict[str, int]:
        return dict(self._metrics)

    @property
    def info(self) -> DispatcherInfo:
        stats = self._channel.stats()
        return DispatcherInfo(
            pid=stats.pid,
            alive=self._channel.is_alive,
            created_at=self._created_at,
            cycles=self._cycles,
            events_dispatched=self._events_dispatched,
            last_code=self.current_event_code(),
            returncode=stats.returncode,
            memory_usage=stats.memory_usage,
            cpu_percent=stats.cpu_percent,
        )

    def current_event_code(self) -> int:
        """Code of the event being (or last) dispatched, 0 before any."""
        return self._last_event.code if self._last_event else 0

    def current_event_payload(self) -> str:
        """Payload of the event being (or last) dispatched, "" before any."""
        return self._last_event.payload if self._last_event else ""

    def add_handler(self, code: Code | str, handler: Handler) -> None:
        """Register ``handler`` for an event code or for ``DEFAULT``."""
        self._handlers.register(code, handler)

    def remove_handler(self, code: Code | str) -> bool:
        return self._handlers.unregister(code)

    def add_interceptor(self, fn: Interceptor) -> None:
        """Register a passive observer called with every event before routing.

        Interceptor failures are logged and never interrupt dispatch.
        """
        if fn not in self._interceptors:
            self._interceptors.append(fn)

    def remove_interceptor(self, fn: Interceptor) -> None:
        if fn in self._interceptors:
            self._interceptors.remove(fn)

    def queue_command(self, command: str, *params: object) -> None:
        """Queue one command line for the worker; it is sent by a later pump."""
        line = encode_command(command, *params, encoding=self._config.encoding)
        self._channel.queue_input(line)
        logger.debug("Command queued", pid=self.pid, command=command, params=len(params))

    def pump_once(self) -> bool:
        """Run one non-blocking pump cycle.

        Returns:
            False once the worker has died (the current event is then the
            reserved child-died event), True otherwise
        """
        # Events left behind by a handler that raised go out first
        self._dispatch_pending()

        if not self._channel.is_alive:
            return self._on_child_died()

        self._cycles += 1
        queued = len(self._channel.input_buffer)
        self._channel.pump_nonblocking()
        self._count("bytes_written", queued - len(self._channel.input_buffer))

        self._report_errors()

        output = self._channel.take_output()
        if output:
            self._count("bytes_read", len(output))
            try:
                self._lines.append(output)
            finally:
                # Lines completed before an oversized one still go out
                self._pending.extend(self._lines.drain())

        self._dispatch_pending()
        return True

    def run_until_exit(self) -> None:
        """Pump and dispatch until the worker exits.

        Between cycles the loop waits up to ``config.poll_interval``
        seconds for a pipe to become ready instead of spinning.
        """
        poll_interval = self._config.poll_interval
        logger.info("Dispatch loop started", pid=self.pid, poll_interval=poll_interval)

        while self.pump_once():
            if poll_interval is None:
                continue
            if not self._channel.wait_ready(poll_interval):
                self._count("idle_waits")

        logger.info(
            "Dispatch loop finished",
            pid=self.pid,
            cycles=self._cycles,
            events=self._events_dispatched,
        )

    def shutdown(self) -> int:
        """Send the shutdown command and wait for the worker to exit.

        Raises:
            TerminationError: If the exit cannot be confirmed as clean
        """
        logger.info("Shutting down worker", pid=self.pid)
        return self._channel.terminate(
            self._config.shutdown_command,
            timeout=self._config.shutdown_timeout,
            encoding=self._config.encoding,
        )

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._channel.closed:
            return
        if exc is None:
            self.shutdown()
            return
        # Keep the exception raised inside the block
        try:
            self.shutdown()
        except TerminationError as e:
            logger.warning(
                "Shutdown failed while handling an exception",
                pid=self.pid,
                returncode=e.returncode,
                error=str(e),
            )

    def _count(self, name: str, amount: int = 1) -> None:
        if self._config.enable_metrics:
            self._metrics[name] += amount

    def _dispatch_pending(self) -> None:
        while self._pending:
            self._dispatch(self._pending.popleft())

    def _dispatch(self, event: Event) -> None:
        self._last_event = event
        self._events_dispatched += 1
        if event.code == UNKNOWN_FRAME:
            self._count("unknown_frames")

        for interceptor in list(self._interceptors):
            try:
                interceptor(event)
            except Exception as e:
                logger.warning(
                    "event_interceptor_error",
                    error=str(e),
                    interceptor=getattr(interceptor, "__name__", str(interceptor)),
                )

        handler = self._handlers.resolve(event)
        if handler is None:
            self._count("dropped_events")
            logger.debug("No handler for event", pid=self.pid, code=event.code)
            return

        handler(self)

    def _report_errors(self) -> None:
        errors = self._channel.take_errors()
        if not errors:
            return
        self._count("stderr_warnings")
        logger.warning(
            "worker_stderr",
            pid=self.pid,
            data=errors.decode(self._config.encoding, errors="replace"),
        )

    def _on_child_died(self) -> bool:
        if not self._channel.closed:
            # stdout EOF can precede the exit; give the worker time to finish
            self._channel.close(grace=self._config.shutdown_timeout)
            logger.warning(
                "Worker died",
                pid=self.pid,
                returncode=self._channel.returncode,
                partial_line=len(self._lines.pending),
            )
        self._last_event = child_died()
        return False
