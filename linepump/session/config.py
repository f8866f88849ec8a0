"""Configuration for dispatcher behavior."""

import codecs
from dataclasses import dataclass
from typing import Optional


@dataclass
class DispatcherConfig:
    """Configuration for a dispatcher and the worker it spawns.

    ``poll_interval`` is how long ``run_until_exit`` waits for pipe
    readiness between idle cycles; ``None`` pumps in a tight loop.
    """

    # Worker invocation
    executable_path: str = "./worker"
    args: tuple[str, ...] = ()
    env: Optional[dict[str, str]] = None
    cwd: Optional[str] = None

    # Wire
    encoding: str = "utf-8"
    read_chunk_size: int = 64 * 1024
    max_line_size: Optional[int] = None

    # Shutdown
    shutdown_command: str = "quit"
    shutdown_timeout: float = 5.0

    # Run loop
    poll_interval: Optional[float] = 0.05

    # Monitoring and metrics
    enable_metrics: bool = False

    def __post_init__(self) -> None:
        if not self.executable_path:
            raise ValueError("executable_path must not be empty")
        if self.read_chunk_size <= 0:
            raise ValueError("read_chunk_size must be positive")
        if self.shutdown_timeout <= 0:
            raise ValueError("shutdown_timeout must be positive")
        if self.poll_interval is not None and self.poll_interval < 0:
            raise ValueError("poll_interval must not be negative")
        if self.max_line_size is not None and self.max_line_size <= 0:
            raise ValueError("max_line_size must be positive")
        try:
            codecs.lookup(self.encoding)
        except LookupError as e:
            raise ValueError(f"Unknown encoding: {self.encoding}") from e
        self.args = tuple(self.args)
