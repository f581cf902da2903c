"""
Background transfer of process-image jobs.

submit() does the local work (save original, encode upload, register the
job) on the caller's thread and hands the HTTP round trip to a single
runner-owned worker. The worker lands the response body in the scratch
directory and then runs on_transfer_complete() on that same worker, so
completion never depends on the caller still being around.
"""
import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

import requests
from requests.adapters import HTTPAdapter

from photostyle.decoder import decode_image, decode_response, envelope_error_code, parse_json
from photostyle.errors import (
    ImageSaveFailed,
    InsufficientCredits,
    InvalidResponse,
    NetworkError,
    ProcessingError,
    TransferTimeout,
)
from photostyle.events import JobCompleted, JobEvents, JobFailed, Listener
from photostyle.logging_config import job_logger, safe_preview
from photostyle.project_store import ProjectStore
from photostyle.registry import PendingJobRegistry
from photostyle.schemas import PendingJob, ProcessImageRequest, Project, ProjectStatus
from photostyle.utils import compress_for_upload, encode_image_to_data_url, reencode_jpeg, safe_unlink, write_protected

log = logging.getLogger("photostyle.transfer")

TokenProvider = Callable[[], str]
CHUNK_SIZE = 64 * 1024

class CreditsProvider(Protocol):
    def balance(self) -> int:
        ...

@dataclass(frozen=True)
class TransferOutcome:
    """What the transport reports for one job: a landed body or a transport error."""
    status_code: Optional[int] = None
    body_path: Optional[Path] = None
    error: Optional[ProcessingError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 300

def build_session(max_connections: int = 1) -> requests.Session:
    # one pooled connection, callers block instead of opening a second one
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=1, pool_maxsize=max_connections, pool_block=True, max_retries=0)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session

class TransferTaskRunner:
    def __init__(
        self,
        url: str,
        token_provider: TokenProvider,
        registry: PendingJobRegistry,
        store: ProjectStore,
        events: JobEvents,
        scratch_dir: Union[str, Path],
        session: Optional[requests.Session] = None,
        credits: Optional[CreditsProvider] = None,
        credits_per_job: int = 1,
        request_timeout: float = 60,
        resource_timeout: float = 300,
        max_connections: int = 1,
        upload_max_dimension: int = 1920,
        upload_quality: int = 70,
        original_quality: int = 80,
        preview_chars: int = 1000,
        notifier: Optional[Callable[[str], None]] = None,
    ):
        self.url = url
        self.token_provider = token_provider
        self.registry = registry
        self.store = store
        self.events = events
        self.scratch_dir = Path(scratch_dir)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        self.session = session if session is not None else build_session(max_connections)
        self.credits = credits
        self.credits_per_job = credits_per_job
        self.request_timeout = request_timeout
        self.resource_timeout = resource_timeout
        self.upload_max_dimension = upload_max_dimension
        self.upload_quality = upload_quality
        self.original_quality = original_quality
        self.preview_chars = preview_chars
        self.notifier = notifier
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="photostyle-transfer")

    # --------------------------
    # Public interface
    # --------------------------
    def prepare_upload(self, image: bytes) -> str:
        try:
            compressed = compress_for_upload(image, self.upload_max_dimension, self.upload_quality)
        except (OSError, ValueError) as e:
            log.exception("Failed to compress image for upload")
            raise ImageSaveFailed(f"Failed to compress image: {e}") from e
        return encode_image_to_data_url(compressed)

    def submit(
        self,
        template_id: str,
        template_name: str,
        original_image: bytes,
        image_base64: Optional[str] = None,
        listener: Optional[Listener] = None,
    ) -> str:
        """
        Start a job and return its id without waiting for the network.
        Raises ImageSaveFailed, InsufficientCredits or NetworkError before
        anything is registered. A listener given here is subscribed to the
        job before the transfer starts, so it cannot miss the terminal event.
        """
        self._check_credits()
        token = self._token()

        job_id = str(uuid.uuid4())
        jlog = job_logger(job_id)

        asset_path = self._save_original(original_image, job_id)
        if image_base64 is None:
            image_base64 = self.prepare_upload(original_image)

        job = PendingJob(
            id=job_id,
            template_id=template_id,
            template_name=template_name,
            original_asset_path=str(asset_path),
        )
        self.registry.put(job)
        if listener is not None:
            self.events.subscribe(job_id, listener)
        jlog.info("Job registered template=%s asset=%s", template_id, asset_path)

        self._enqueue(job, image_base64, token)
        return job_id

    def resume_outstanding(self) -> int:
        """Re-send every job the journal still holds from a previous run."""
        jobs = self.registry.restore()
        resumed = 0
        for job in jobs:
            jlog = job_logger(job.id)
            try:
                original = Path(job.original_asset_path).read_bytes()
                image_base64 = self.prepare_upload(original)
                token = self._token()
            except FileNotFoundError:
                jlog.error("Original asset missing, cannot resume: %s", job.original_asset_path)
                self._fail(job, ImageSaveFailed("Original image missing after restart"))
                continue
            except ProcessingError as e:
                self._fail(job, e)
                continue
            jlog.info("Resuming outstanding job template=%s", job.template_id)
            self._enqueue(job, image_base64, token)
            resumed += 1
        return resumed

    def on_transfer_complete(self, job_id: str, outcome: TransferOutcome) -> Optional[Project]:
        """
        Completion callback. Runs the body through the decoder and the store
        and publishes exactly one terminal event per registered job. A job id
        that is no longer registered (duplicate or post-restart delivery) is
        logged and dropped.
        """
        jlog = job_logger(job_id)
        job = self.registry.get(job_id)
        if job is None:
            jlog.warning("Completion for unregistered job, dropping (duplicate or relaunch)")
            safe_unlink(outcome.body_path)
            return None

        try:
            project = self._finish(job, outcome)
        except ProcessingError as e:
            self._fail(job, e)
            return None
        except Exception as e:
            jlog.exception("Unexpected failure completing job")
            self._fail(job, InvalidResponse(f"Unexpected failure: {e}"))
            return None
        finally:
            safe_unlink(outcome.body_path)

        if self.registry.remove(job_id) is None:
            jlog.info("Job already finalized by another completion, skip publish")
            return project
        self._cleanup(job)

        if project is None:
            return None
        delivered = self.events.publish(JobCompleted(job_id, project))
        jlog.info("Job completed project=%s listeners=%d", project.id, delivered)
        if not delivered and self.notifier is not None:
            self.notifier(job.template_name)
        return project

    def drain(self, timeout: Optional[float] = None):
        """Block until everything queued so far has finished."""
        self._executor.submit(lambda: None).result(timeout)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
        self.session.close()

    # --------------------------
    # Helpers
    # --------------------------
    def _check_credits(self):
        if self.credits is None:
            return
        balance = self.credits.balance()
        if balance < self.credits_per_job:
            log.warning("Insufficient credits balance=%d needed=%d", balance, self.credits_per_job)
            raise InsufficientCredits()

    def _token(self) -> str:
        try:
            token = self.token_provider()
        except Exception as e:
            log.exception("Token provider failed")
            raise NetworkError(f"Could not obtain auth token: {e}") from e
        if not token:
            raise NetworkError("Empty auth token")
        return token

    def _save_original(self, image: bytes, job_id: str) -> Path:
        path = self.scratch_dir / f"{job_id}-original.jpg"
        try:
            write_protected(path, reencode_jpeg(image, self.original_quality))
        except (OSError, ValueError) as e:
            log.exception("Failed to save original image job=%s", job_id)
            raise ImageSaveFailed(f"Failed to save image: {e}") from e
        return path

    def _enqueue(self, job: PendingJob, image_base64: str, token: str) -> Future:
        body = ProcessImageRequest(template_id=job.template_id, image_base64=image_base64)
        return self._executor.submit(self._run_transfer, job.id, body, token)

    def _run_transfer(self, job_id: str, body: ProcessImageRequest, token: str):
        outcome = self._transfer(job_id, body, token)
        self.on_transfer_complete(job_id, outcome)

    def _transfer(self, job_id: str, body: ProcessImageRequest, token: str) -> TransferOutcome:
        jlog = job_logger(job_id)
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-Request-ID": job_id,
        }
        landing = self.scratch_dir / f"{job_id}-response.json"
        jlog.info("POST %s (payload chars=%d)", self.url, len(body.image_base64))

        t0 = time.monotonic()
        try:
            with self.session.post(
                self.url,
                json=body.model_dump(),
                headers=headers,
                timeout=(self.request_timeout, self.resource_timeout),
                stream=True,
            ) as resp:
                jlog.info("HTTP status=%s", resp.status_code)
                with open(landing, "wb") as f:
                    for chunk in resp.iter_content(CHUNK_SIZE):
                        if time.monotonic() - t0 > self.resource_timeout:
                            raise TransferTimeout(f"Resource timeout after {self.resource_timeout:.0f}s")
                        f.write(chunk)
                status = resp.status_code
        except requests.Timeout as e:
            jlog.error("Transfer timed out: %s", e)
            safe_unlink(landing)
            return TransferOutcome(error=TransferTimeout(str(e)))
        except TransferTimeout as e:
            jlog.error("Transfer timed out: %s", e)
            safe_unlink(landing)
            return TransferOutcome(error=e)
        except requests.RequestException as e:
            jlog.error("Transfer failed: %s", e)
            safe_unlink(landing)
            return TransferOutcome(error=NetworkError(str(e)))
        except OSError as e:
            jlog.exception("Could not land response body")
            safe_unlink(landing)
            return TransferOutcome(error=NetworkError(f"Could not store response: {e}"))

        ms = int((time.monotonic() - t0) * 1000)
        jlog.info("Transfer finished in %d ms", ms)
        return TransferOutcome(status_code=status, body_path=landing)

    def _finish(self, job: PendingJob, outcome: TransferOutcome) -> Optional[Project]:
        jlog = job_logger(job.id)
        if outcome.error is not None:
            raise outcome.error

        body = outcome.body_path.read_bytes() if outcome.body_path else b""
        if not outcome.ok:
            text = body.decode("utf-8", errors="replace")
            jlog.error("HTTP error status=%s body=%s", outcome.status_code, safe_preview(text, self.preview_chars))
            try:
                code = envelope_error_code(parse_json(body))
            except ValueError:
                code = None
            if code == "insufficient_credits":
                raise InsufficientCredits()
            raise InvalidResponse(f"HTTP {outcome.status_code}: {safe_preview(text, 200)}")

        result = decode_response(body, self.preview_chars)
        image = decode_image(result.image_payload)
        jlog.info(
            "Decoded result model=%s generation_ms=%d size=%dx%d bytes=%d",
            result.model_used, result.generation_time_ms,
            result.processed_width, result.processed_height, len(image),
        )

        project = Project(
            template_id=job.template_id,
            template_name=job.template_name or result.template_name,
            status=ProjectStatus.COMPLETED,
            job_id=job.id,
        )
        committed = self.store.commit(job.id, image, project)
        if committed.skipped:
            jlog.info("Result already stored (%s)", committed.reason)
        return committed.project

    def _fail(self, job: PendingJob, error: ProcessingError):
        jlog = job_logger(job.id)
        if self.registry.remove(job.id) is None:
            jlog.info("Job already finalized, not publishing failure %s", error.kind.value)
            return
        self._cleanup(job)
        jlog.error("Job failed kind=%s: %s", error.kind.value, error)
        self.events.publish(JobFailed(job.id, error.kind, str(error)))

    def _cleanup(self, job: PendingJob):
        safe_unlink(job.original_asset_path)
