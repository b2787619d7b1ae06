"""Async usage audit logging with batch writing.

Every admission decision is handed to an AuditSink. The default sink buffers
records in memory and writes them to the rate_limit_usage_logs table in bulk,
either when the buffer fills or after a flush interval. Recording never
blocks or fails the admission path.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Set

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.db.async_session import get_async_session
from ratelimiter.app.db.crud import save_usage_logs_bulk

logger = get_logger(__name__)

# Widths of the free-text columns in rate_limit_usage_logs
IP_ADDRESS_MAX_LENGTH = 45
USER_AGENT_MAX_LENGTH = 500

# Dead letter queue file path for usage logs that could not be written
DEAD_LETTER_QUEUE_PATH = Path(
    os.getenv("DEAD_LETTER_QUEUE_PATH", "/tmp/ratelimiter_failed_usage_logs.jsonl")
)


class AuditSink(ABC):
    """Receiver of admission decisions. Implementations must not raise."""

    @abstractmethod
    def record(
        self,
        principal_id: str,
        resource: str,
        allowed: bool,
        remaining_tokens: int,
        algorithm: str,
        latency_ms: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Record one decision. Fire-and-forget."""


@dataclass
class UsageLogData:
    """Data required to log one admission decision."""
    user_id: str
    resource: str
    allowed: bool
    remaining_tokens: int
    algorithm: str
    response_time_ms: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        # Client-supplied headers; an oversized value would fail the whole batch
        if self.ip_address is not None:
            self.ip_address = self.ip_address[:IP_ADDRESS_MAX_LENGTH]
        if self.user_agent is not None:
            self.user_agent = self.user_agent[:USER_AGENT_MAX_LENGTH]

    def to_row(self) -> dict:
        return asdict(self)


class AsyncUsageLogger(AuditSink):
    """Async usage logger with batch writing.

    Features:
    - Batch buffering: collects up to `buffer_size` records (default 100)
    - Timer-based flush: flushes every `flush_interval` seconds (default 5)
    - Graceful shutdown: flushes remaining records on shutdown
    - Retry logic: retries failed batches with exponential backoff, then
      writes them to a dead letter file

    Example:
        usage_logger = AsyncUsageLogger()
        usage_logger.record("user-1", "api/users", True, 9, "TOKEN_BUCKET", 2)

        # On application shutdown:
        await usage_logger.shutdown()
    """

    def __init__(
        self,
        buffer_size: int = 100,
        flush_interval: float = 5.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        session_factory: Callable = get_async_session,
    ):
        self.buffer_size = buffer_size
        self.flush_interval = flush_interval
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._session_factory = session_factory

        self._buffer: List[UsageLogData] = []
        self._buffer_lock = asyncio.Lock()

        self._flush_task: Optional[asyncio.Task] = None
        self._pending_flushes: Set[asyncio.Task] = set()
        self._shutdown_event = asyncio.Event()
        self._started = False

    def start(self) -> None:
        """Start the background flush task."""
        if not self._started:
            self._shutdown_event.clear()
            self._flush_task = asyncio.create_task(self._flush_loop())
            self._started = True
            logger.debug("AsyncUsageLogger started")

    async def shutdown(self) -> None:
        """Stop the flush loop and write whatever is still buffered."""
        logger.debug("AsyncUsageLogger shutting down...")
        self._shutdown_event.set()

        if self._started and self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass

        if self._pending_flushes:
            await asyncio.gather(*self._pending_flushes, return_exceptions=True)

        # Final flush, even if start() was never called
        await self._flush_buffer()

        self._started = False
        logger.debug("AsyncUsageLogger shutdown complete")

    def record(
        self,
        principal_id: str,
        resource: str,
        allowed: bool,
        remaining_tokens: int,
        algorithm: str,
        latency_ms: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        if not self._started:
            self.start()

        self._buffer.append(
            UsageLogData(
                user_id=principal_id,
                resource=resource,
                allowed=allowed,
                remaining_tokens=remaining_tokens,
                algorithm=algorithm,
                response_time_ms=latency_ms,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )

        if len(self._buffer) >= self.buffer_size:
            task = asyncio.create_task(self._flush_buffer())
            self._pending_flushes.add(task)
            task.add_done_callback(self._pending_flushes.discard)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def _flush_loop(self) -> None:
        """Background task that periodically flushes the buffer."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.flush_interval
                )
            except asyncio.TimeoutError:
                pass

            if not self._shutdown_event.is_set():
                await self._flush_buffer()

    async def _flush_buffer(self) -> None:
        """Take everything out of the buffer and write it as one batch."""
        async with self._buffer_lock:
            if not self._buffer:
                return
            entries = self._buffer
            self._buffer = []

        logger.debug(f"Flushing {len(entries)} usage logs to database")
        await self._batch_log_with_retry(entries)

    async def _batch_log_with_retry(self, entries: List[UsageLogData]) -> None:
        last_error: Optional[Exception] = None
        delay = self.retry_delay

        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._session_factory() as session:
                    await save_usage_logs_bulk(session, [e.to_row() for e in entries])
                logger.debug(
                    f"Saved {len(entries)} usage logs",
                    extra={"attempt": attempt}
                )
                return
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Usage log batch save failed (attempt {attempt}/{self.max_retries}): {e}",
                    extra={"attempt": attempt}
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(delay)
                    delay *= 2

        logger.error(
            f"Usage log batch save failed after {self.max_retries} attempts: {last_error}. "
            f"Writing {len(entries)} records to dead letter queue."
        )
        await self._write_to_dead_letter_queue(entries)

    async def _write_to_dead_letter_queue(self, entries: List[UsageLogData]) -> None:
        """Append failed records to a JSONL file for later replay."""

        def _write_sync() -> None:
            DEAD_LETTER_QUEUE_PATH.parent.mkdir(parents=True, exist_ok=True)
            with open(DEAD_LETTER_QUEUE_PATH, "a", encoding="utf-8") as f:
                for entry in entries:
                    f.write(json.dumps(entry.to_row(), default=str, ensure_ascii=False) + "\n")

        try:
            await asyncio.to_thread(_write_sync)
        except OSError as dlq_error:
            logger.critical(
                f"Failed to write to dead letter queue: {dlq_error}. "
                f"{len(entries)} usage logs are permanently lost!"
            )


class NullAuditSink(AuditSink):
    """Discards every record. Used when auditing is disabled."""

    def record(self, *args, **kwargs) -> None:
        return None


_usage_logger: Optional[AsyncUsageLogger] = None


def get_usage_logger() -> AsyncUsageLogger:
    """Get the global usage logger instance."""
    global _usage_logger
    if _usage_logger is None:
        _usage_logger = AsyncUsageLogger(
            buffer_size=settings.audit_buffer_size,
            flush_interval=settings.audit_flush_interval,
            max_retries=settings.audit_max_retries,
        )
    return _usage_logger


def reset_usage_logger() -> None:
    """Reset the global usage logger instance."""
    global _usage_logger
    _usage_logger = None
