"""Upload ingest and conversion lifecycle.

Coordinates the media store, metadata registry, job registry and transcode
engine for each upload:

- Store the bytes under ``<id><ext>`` and record metadata before anything else
- Schedule a background conversion when the container is not web-playable
- Translate engine callbacks into job transitions (which reach the status hub)
- Hand the converted file over to the serving path, then mark the job done

Failures stay local to one id: the original file and record remain servable
and the job ends in ``error``.
"""

import concurrent.futures
import logging
import mimetypes
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Union

from vhoster.config.models import AppConfig
from vhoster.domain.errors import NotFound, TranscodeError
from vhoster.domain.models import JobStatus, MediaRecord, TranscodeStrategy
from vhoster.infrastructure.ffmpeg import FFmpegAdapter
from vhoster.infrastructure.media_store import MediaStore
from vhoster.infrastructure.metadata_registry import MetadataRegistry
from vhoster.pipeline.jobs import JobRegistry

DEFAULT_MIME = "application/octet-stream"

_STRATEGY_MESSAGES = {
    TranscodeStrategy.REMUX: "remuxing (copying)",
    TranscodeStrategy.REENCODE: "re-encoding",
}


def guess_mime(filename: str, fallback: Optional[str] = None) -> str:
    return mimetypes.guess_type(filename)[0] or fallback or DEFAULT_MIME


@dataclass
class IngestResult:
    record: MediaRecord
    job: Optional[dict] = None  # job payload when a conversion was scheduled


class _ConversionListener:
    """Engine callbacks for one media id."""

    def __init__(self, orchestrator: "Orchestrator", media_id: str, source_filename: str, target_filename: str):
        self.orchestrator = orchestrator
        self.jobs = orchestrator.jobs
        self.media_id = media_id
        self.source_filename = source_filename
        self.target_filename = target_filename

    def on_start(self, strategy: TranscodeStrategy, command: List[str]) -> None:
        message = _STRATEGY_MESSAGES[strategy]
        job = self.jobs.get(self.media_id)
        if job is not None and job.status == JobStatus.QUEUED:
            self.jobs.start(self.media_id, message)
        else:
            self.jobs.annotate(self.media_id, message)

    def on_progress(self, percent: int, timemark: Optional[str], estimated: bool) -> None:
        self.jobs.progress(self.media_id, percent, timemark, estimated)

    def on_error(self, error: TranscodeError) -> None:
        self.jobs.fail(self.media_id, str(error))

    def on_end(self) -> None:
        try:
            self.orchestrator.commit_conversion(self.media_id, self.source_filename, self.target_filename)
        except (NotFound, OSError) as exc:
            self.orchestrator.logger.error(f"HANDOFF_FAILED: {self.media_id}: {exc}")
            self.orchestrator.store.remove(self.target_filename)
            self.jobs.fail(self.media_id, f"could not publish converted file: {exc}")
            return
        self.jobs.finish(self.media_id)


class Orchestrator:
    """Upload ingest and conversion pipeline.

    Args:
        config: AppConfig (transcode section decides which uploads convert).
        store: MediaStore holding the media bytes.
        registry: MetadataRegistry with one MediaRecord per id.
        jobs: JobRegistry tracking live conversions.
        engine: FFmpegAdapter running conversions in the background.
    """

    def __init__(
        self,
        config: AppConfig,
        store: MediaStore,
        registry: MetadataRegistry,
        jobs: JobRegistry,
        engine: FFmpegAdapter,
    ):
        self.config = config
        self.store = store
        self.registry = registry
        self.jobs = jobs
        self.engine = engine
        self.logger = logging.getLogger(__name__)
        self._futures: Dict[str, "concurrent.futures.Future[Path]"] = {}
        self._futures_lock = threading.Lock()

    def needs_conversion(self, extension: str) -> bool:
        return extension.lower() not in self.config.transcode.supported_extensions

    def ingest(self, source: Union[bytes, BinaryIO], original_name: str, client_mime: Optional[str] = None) -> IngestResult:
        """Stores an upload, records it and schedules conversion if needed."""
        media_id = str(uuid.uuid4())
        extension = Path(original_name or "").suffix.lower()
        filename = self.store.put(source, extension, stem=media_id)

        record = MediaRecord(
            id=media_id,
            stored_filename=filename,
            original_name=original_name or filename,
            mime_type=guess_mime(filename, client_mime),
            size_bytes=self.store.stat(filename),
            converted=False,
        )
        # Recorded before scheduling so the completion handler always finds it
        self.registry.insert(record)
        self.logger.info(f"UPLOAD_STORED: {media_id} {record.original_name!r} ({record.size_bytes} bytes)")

        if not self.needs_conversion(extension):
            return IngestResult(record=record)
        job = self.schedule_conversion(media_id)
        return IngestResult(record=record, job=job)

    def schedule_conversion(self, media_id: str) -> dict:
        """Creates the job and starts the engine; raises AlreadyExists if one is live."""
        record = self.registry.get(media_id)
        if record is None:
            raise NotFound(f"Unknown media id: {media_id}")

        target = f"{media_id}{self.config.transcode.target_extension}"
        if target == record.stored_filename:
            target = f"{media_id}.converted{self.config.transcode.target_extension}"

        job = self.jobs.create(media_id)
        listener = _ConversionListener(self, media_id, record.stored_filename, target)
        try:
            future = self.engine.start(
                self.store.path_for(record.stored_filename),
                self.store.path_for(target),
                listener,
            )
        except RuntimeError as exc:  # executor already shut down
            self.jobs.fail(media_id, f"could not schedule conversion: {exc}")
            raise
        with self._futures_lock:
            self._futures[media_id] = future
        future.add_done_callback(lambda f: self._on_future_done(media_id, f))
        return job.to_payload()

    def _on_future_done(self, media_id: str, future: "concurrent.futures.Future[Path]") -> None:
        with self._futures_lock:
            if self._futures.get(media_id) is future:
                del self._futures[media_id]
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None and not isinstance(exc, TranscodeError):
            # Engine bug rather than encoder failure; never leave the job running
            self.logger.error(f"TRANSCODE_CRASHED: {media_id}: {exc!r}")
            job = self.jobs.get(media_id)
            if job is not None and not job.status.is_terminal:
                self.jobs.fail(media_id, str(exc) or type(exc).__name__)

    def commit_conversion(self, media_id: str, source_filename: str, target_filename: str) -> MediaRecord:
        """Points the record at the converted file, then drops the original.

        The record changes as one group, so readers see either the old file
        or the new one, never a mix.
        """
        size = self.store.stat(target_filename)
        record = self.registry.update(
            media_id,
            stored_filename=target_filename,
            mime_type=guess_mime(target_filename, DEFAULT_MIME),
            size_bytes=size,
            converted=True,
        )
        self.store.replace(source_filename, target_filename)
        self.logger.info(f"HANDOFF_DONE: {media_id} now served from {target_filename} ({size} bytes)")
        return record

    def get_record(self, media_id: str) -> MediaRecord:
        record = self.registry.get(media_id)
        if record is None:
            raise NotFound(f"Unknown media id: {media_id}")
        return record

    def describe(self, record: MediaRecord, base_url: str) -> dict:
        return {
            "id": record.id,
            "videoUrl": f"{base_url}/v/{record.id}",
            "shortUrl": f"{base_url}/s/{record.id}",
            "info": record.to_payload(),
        }

    def wait(self, media_id: str, timeout: Optional[float] = None) -> bool:
        """Blocks until the id's conversion finishes; False if none was scheduled."""
        with self._futures_lock:
            future = self._futures.get(media_id)
        if future is None:
            # Finished conversions are forgotten; the job table still knows them
            job = self.jobs.get(media_id)
            return job is not None and job.status.is_terminal
        concurrent.futures.wait([future], timeout=timeout)
        return future.done()

    def shutdown(self, wait: bool = False) -> None:
        self.engine.shutdown(wait=wait)
