"""BugReporter — the explicitly constructed entry point.

Usage:
    config = load_config({"endpoint": "https://bugs.example.com",
                          "auth": {"type": "api-key", "api_key": "..."}})
    async with BugReporter(config) as reporter:
        result = reporter.submit(RawReport(title="Crash on save", description=...))

There is no module-level instance: construct one, ``open()`` it, ``close()``
it.  ``open()`` raises on failure instead of calling an error hook.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .builder import RawReport, ReportBuilder
from .config import PipelineConfig, build_auth, build_sanitizer, build_storage
from .dedupe import DuplicateFilter
from .engine import DeliveryEngine, ProgressListener
from .image import ImageSanitizer
from .persistent_queue import FailureListener, PersistentQueue
from .storage import Storage
from .transport import CollectorTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitResult:
    fingerprint: str
    entry_id: str | None       # None when suppressed as a duplicate
    suppressed: bool = False


class BugReporter:
    """Wires builder, duplicate filter, queue and delivery engine together."""

    def __init__(
        self,
        config: PipelineConfig,
        *,
        storage: Storage | None = None,
        transport: CollectorTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.clock = clock
        self.storage = storage if storage is not None else build_storage(config)
        self.transport = transport or CollectorTransport(
            config.endpoint, build_auth(config), timeout=config.timeout,
        )
        self.builder = ReportBuilder(
            build_sanitizer(config),
            ImageSanitizer(mode=config.image_mode),
            clock=clock,
        )
        self.duplicates = DuplicateFilter(
            self.storage, window_hours=config.duplicate_window_hours, clock=clock,
        )
        self.queue = PersistentQueue(
            self.storage,
            max_attempts=config.max_attempts,
            backoff_base_ms=config.backoff_base_ms,
            backoff_max_ms=config.backoff_max_ms,
            max_queue_size=config.max_queue_size,
            clock=clock,
        )
        self.engine = DeliveryEngine(
            self.queue, self.transport, self.duplicates,
            compression=config.compression_enabled,
            direct_upload=config.direct_upload_enabled,
            inline_limit_bytes=config.inline_limit_bytes,
            clock=clock,
        )
        self._open = False

    async def open(self, *, start: bool = True) -> BugReporter:
        """Load the persisted queue and start delivering."""
        self.queue.open()
        self._open = True
        if start:
            self.engine.start()
            if len(self.queue):
                self.engine.notify()
        return self

    async def close(self) -> None:
        """Stop delivery (in-flight work returns to pending) and release resources."""
        if not self._open:
            return
        self._open = False
        await self.engine.stop()
        await self.transport.aclose()
        self.queue.close()

    async def __aenter__(self) -> BugReporter:
        return await self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def on_failure(self, listener: FailureListener) -> None:
        self.queue.subscribe(listener)

    def on_progress(self, listener: ProgressListener) -> None:
        self.engine.subscribe_progress(listener)

    def submit(self, raw: RawReport) -> SubmitResult:
        """Sanitize and enqueue a report.

        Raises MalformedInputError for bad input and StorageError when the
        queue cannot persist it; in both cases nothing is enqueued.
        """
        report = self.builder.build(raw)
        fp = report.id
        if self.duplicates.should_suppress(fp):
            self.duplicates.record(fp)
            logger.info("Not enqueueing duplicate report %s", fp[:12])
            return SubmitResult(fp, None, suppressed=True)

        entry_id = self.queue.enqueue(report)
        self.engine.notify()
        return SubmitResult(fp, entry_id)

