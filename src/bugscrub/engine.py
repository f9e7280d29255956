"""Delivery engine — the single worker that drains the queue to the collector.

One transmission at a time.  The loop sleeps until either something is
enqueued (``notify``) or the earliest scheduled retry comes due, so tests can
drive it step by step with ``process_next`` and a fake clock.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from .compress import compress_data
from .dedupe import DuplicateFilter
from .errors import DeliveryError
from .persistent_queue import PersistentQueue
from .transport import CollectorTransport
from .types import EntryStatus, QueueEntry

logger = logging.getLogger(__name__)

INLINE_LIMIT_BYTES = 256 * 1024
ERROR_PAUSE_SECONDS = 5.0

ProgressListener = Callable[[str, int, int], None]


@dataclass
class DeliveryResult:
    """Outcome of one processed entry."""
    entry_id: str
    status: EntryStatus
    suppressed: bool = False
    error: str | None = None


@dataclass
class _Attachment:
    kind: str
    filename: str
    content_type: str
    data: bytes
    encoding: str | None


class DeliveryEngine:
    """Drains a PersistentQueue through a CollectorTransport."""

    def __init__(
        self,
        queue: PersistentQueue,
        transport: CollectorTransport,
        duplicate_filter: DuplicateFilter,
        *,
        compression: bool = True,
        direct_upload: bool = True,
        inline_limit_bytes: int = INLINE_LIMIT_BYTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.queue = queue
        self.transport = transport
        self.duplicate_filter = duplicate_filter
        self.compression = compression
        self.direct_upload = direct_upload
        self.inline_limit_bytes = inline_limit_bytes
        self.clock = clock
        self._progress: list[ProgressListener] = []
        self._wake = asyncio.Event()
        self._shutdown = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._delivered = 0

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe_progress(self, listener: ProgressListener) -> None:
        self._progress.append(listener)

    def unsubscribe_progress(self, listener: ProgressListener) -> None:
        if listener in self._progress:
            self._progress.remove(listener)

    def _emit_progress(self, entry_id: str, sent: int, total: int) -> None:
        for listener in list(self._progress):
            try:
                listener(entry_id, sent, total)
            except Exception:
                logger.exception("Progress listener raised")

    # ------------------------------------------------------------------
    # One step
    # ------------------------------------------------------------------

    async def process_next(self, now: float | None = None) -> DeliveryResult | None:
        """Handle the next ready entry, if any."""
        entry = self.queue.peek_ready(now)
        if entry is None:
            return None
        entry_id, fp = entry.entry_id, entry.report.id

        if self.duplicate_filter.should_suppress(fp, now):
            count = self.duplicate_filter.record(fp, now)
            self.queue.mark_delivered(entry_id)
            logger.info("Suppressed duplicate %s (seen %d times)", fp[:12], count)
            return DeliveryResult(entry_id, EntryStatus.DELIVERED, suppressed=True)

        self.queue.mark_in_flight(entry_id)
        try:
            await self._transmit(entry)
        except asyncio.CancelledError:
            # Shutdown mid-flight: not sent as far as we know, so retry later
            self.queue.mark_pending(entry_id)
            raise
        except DeliveryError as exc:
            status = self.queue.mark_failed(entry_id, str(exc), exc.retriable, retry_after=exc.retry_after)
            return DeliveryResult(entry_id, status, error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error delivering %s", entry_id)
            status = self.queue.mark_failed(entry_id, f"{type(exc).__name__}: {exc}", True)
            return DeliveryResult(entry_id, status, error=str(exc))

        self.duplicate_filter.record(fp, now)
        self.queue.mark_delivered(entry_id)
        self._delivered += 1
        logger.info("Delivered report %s (attempt %d)", fp[:12], entry.report.attempts)
        return DeliveryResult(entry_id, EntryStatus.DELIVERED)

    async def drain(self, now: float | None = None) -> list[DeliveryResult]:
        """Process every entry that is ready at ``now``."""
        results: list[DeliveryResult] = []
        while (result := await self.process_next(now)) is not None:
            results.append(result)
        return results

    # ------------------------------------------------------------------
    # Transmission
    # ------------------------------------------------------------------

    def _attachments(self, entry: QueueEntry) -> list[_Attachment]:
        report = entry.report
        raw: list[tuple[str, str, str, bytes]] = []
        if report.screenshot:
            raw.append(("screenshot", "screenshot.png", "image/png", report.screenshot))
        if report.replay:
            payload = json.dumps(report.replay, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
            raw.append(("replay", "replay.json", "application/json", payload))

        out: list[_Attachment] = []
        for kind, filename, content_type, data in raw:
            if self.compression:
                out.append(_Attachment(kind, filename + ".gz", content_type, compress_data(data), "gzip"))
            else:
                out.append(_Attachment(kind, filename, content_type, data, None))
        return out

    async def _transmit(self, entry: QueueEntry) -> None:
        report = entry.report
        attachments = self._attachments(entry)

        refs: dict[str, dict[str, Any]] = {}
        uploads = []
        for att in attachments:
            meta = {"content_type": att.content_type, "encoding": att.encoding, "size": len(att.data)}
            channel = None
            if self.direct_upload and len(att.data) > self.inline_limit_bytes:
                upload_type = "application/gzip" if att.encoding else att.content_type
                channel = await self.transport.request_upload_channel(att.kind, att.filename, upload_type)
            if channel is None:
                refs[att.kind] = {**meta, "inline": base64.b64encode(att.data).decode("ascii")}
            else:
                refs[att.kind] = {**meta, "storage_key": channel.storage_key}
                uploads.append((att, channel))

        body = self._body(entry, refs)
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": entry.entry_id,
            "X-Report-Fingerprint": report.id,
        }
        if self.compression:
            body = compress_data(body)
            headers["Content-Encoding"] = "gzip"

        total = len(body) + sum(len(att.data) for att, _ in uploads)
        done = 0
        for att, channel in uploads:
            base = done
            await self.transport.upload(
                channel, att.data,
                "application/gzip" if att.encoding else att.content_type,
                lambda sent, _t, base=base: self._emit_progress(entry.entry_id, base + sent, total),
            )
            done += len(att.data)

        await self.transport.send_report(
            body, headers,
            lambda sent, _t: self._emit_progress(entry.entry_id, done + sent, total),
        )

    def _body(self, entry: QueueEntry, attachments: dict[str, dict[str, Any]]) -> bytes:
        record = entry.report.to_record()
        for key in ("screenshot", "replay", "status"):
            record.pop(key, None)
        record["attachments"] = attachments
        return json.dumps(record, ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def notify(self) -> None:
        """Wake the loop (new entry enqueued)."""
        self._wake.set()

    def _seconds_until_due(self) -> float | None:
        due = self.queue.next_wakeup()
        if due is None:
            return None
        return max(0.0, due - self.clock())

    async def run(self) -> None:
        """Drain until shutdown, sleeping between due times."""
        logger.info("Delivery engine started")
        while not self._shutdown.is_set():
            self._wake.clear()
            try:
                result = await self.process_next()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Delivery cycle error")
                timeout = ERROR_PAUSE_SECONDS
            else:
                if result is not None:
                    continue
                timeout = self._seconds_until_due()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass  # a retry came due
        logger.info("Delivery engine stopped (%d reports delivered)", self._delivered)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._shutdown.clear()
            self._task = asyncio.create_task(self.run(), name="bugscrub-delivery")
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        """Cancel any in-flight transmission (entry goes back to pending) and stop."""
        self._shutdown.set()
        self._wake.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
