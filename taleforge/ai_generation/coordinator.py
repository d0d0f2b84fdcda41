"""
Background illustration jobs, one per story segment.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Protocol
from urllib.parse import quote

from taleforge.common import ImageJobFailure
from taleforge.story_generation.story import new_id, utcnow

from .prompting import NEGATIVE_PROMPT, IllustrationPrompt
from .replicate_service import normalize_image_outputs
from .storage import ImageStore

logger = logging.getLogger(__name__)


class ImageJobStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[ImageJobStatus, frozenset[ImageJobStatus]] = {
    ImageJobStatus.PENDING: frozenset({ImageJobStatus.GENERATING, ImageJobStatus.FAILED}),
    ImageJobStatus.GENERATING: frozenset({ImageJobStatus.COMPLETED, ImageJobStatus.FAILED}),
    ImageJobStatus.FAILED: frozenset({ImageJobStatus.PENDING}),
    ImageJobStatus.COMPLETED: frozenset(),
}


@dataclass(frozen=True)
class ImageJob:
    """
    Illustration work for one segment.

    Attributes
    ----------
    prompt / negative_prompt:
        Prompts sent to the image model.
    provider_handle:
        Prediction id while a webhook-mode job waits for its callback.
    image_url:
        Public URL of the stored image once ``completed``.
    error:
        Failure detail once ``failed``.
    """

    id: str
    segment_id: str
    status: ImageJobStatus
    prompt: str = ""
    negative_prompt: str = NEGATIVE_PROMPT
    seed: int | None = None
    retry_count: int = 0
    image_url: str | None = None
    error: str | None = None
    provider_handle: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def none(cls, segment_id: str) -> "ImageJob":
        return cls(id="", segment_id=segment_id, status=ImageJobStatus.NONE)

    def transition(self, status: ImageJobStatus, **changes: Any) -> "ImageJob":
        if status not in _ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise ImageJobFailure(
                self.segment_id,
                f"Image job for segment {self.segment_id} cannot move from "
                f"{self.status.value} to {status.value}.",
            )
        return replace(self, status=status, updated_at=utcnow(), **changes)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "segment_id": self.segment_id,
            "status": self.status.value,
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "seed": self.seed,
            "retry_count": self.retry_count,
            "image_url": self.image_url,
            "error": self.error,
            "provider_handle": self.provider_handle,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ImageJob":
        try:
            return cls(
                id=str(payload["id"]),
                segment_id=str(payload["segment_id"]),
                status=ImageJobStatus(payload["status"]),
                prompt=str(payload.get("prompt") or ""),
                negative_prompt=str(payload.get("negative_prompt") or NEGATIVE_PROMPT),
                seed=payload.get("seed"),
                retry_count=int(payload.get("retry_count") or 0),
                image_url=payload.get("image_url"),
                error=payload.get("error"),
                provider_handle=payload.get("provider_handle"),
                created_at=datetime.fromisoformat(str(payload["created_at"])),
                updated_at=datetime.fromisoformat(str(payload["updated_at"])),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid image job payload: {payload}") from exc


class ImageJobStore(Protocol):
    def save_image_job(self, job: ImageJob) -> None:
        ...

    def get_image_job(self, segment_id: str) -> ImageJob | None:
        ...


class ImageGenerator(Protocol):
    def generate_image(self, prompt: IllustrationPrompt, *, seed: int | None = None) -> Any:
        ...

    def start_prediction(
        self,
        prompt: IllustrationPrompt,
        *,
        webhook: str,
        seed: int | None = None,
    ) -> str:
        ...


class ImageGenerationCoordinator:
    """
    Run illustration jobs in the background, independently of story text.

    Jobs move ``pending -> generating -> completed | failed``; only an explicit
    :meth:`retry` moves a failed job back to ``pending``. A failure is recorded
    on the job and never touches the segment it illustrates.

    Parameters
    ----------
    generator:
        Image backend, usually :class:`ReplicateImageGenerator`.
    store:
        Where finished images are written.
    jobs:
        Persistence for job records.
    executor:
        Runs the jobs. Defaults to a small thread pool owned by the coordinator.
    webhook_url:
        When set, jobs start asynchronous predictions and are finished by
        :meth:`on_provider_callback` instead of waiting for the output.
    """

    def __init__(
        self,
        generator: ImageGenerator,
        store: ImageStore,
        jobs: ImageJobStore,
        *,
        executor: Executor | None = None,
        max_workers: int = 2,
        webhook_url: str | None = None,
    ) -> None:
        self._generator = generator
        self._store = store
        self._jobs = jobs
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="taleforge-image",
        )
        self._webhook_url = webhook_url
        self._lock = threading.RLock()
        self._futures: set[Future] = set()

    def enqueue(
        self,
        segment_id: str,
        image_prompt: str | IllustrationPrompt,
        *,
        job_id: str | None = None,
        seed: int | None = None,
    ) -> ImageJob:
        """
        Create a pending job for ``segment_id`` and schedule it.

        Returns immediately. An existing job for the segment is returned as is.
        """
        if isinstance(image_prompt, IllustrationPrompt):
            prompt, negative = image_prompt.positive, image_prompt.negative
        else:
            prompt, negative = str(image_prompt or "").strip(), NEGATIVE_PROMPT

        with self._lock:
            existing = self._jobs.get_image_job(segment_id)
            if existing is not None:
                return existing

            job = ImageJob(
                id=job_id or new_id(),
                segment_id=segment_id,
                status=ImageJobStatus.PENDING,
                prompt=prompt,
                negative_prompt=negative,
                seed=seed,
            )
            self._jobs.save_image_job(job)

        logger.info("Queued illustration job %s for segment %s.", job.id, segment_id)
        self._schedule(segment_id)
        return job

    def get_status(self, segment_id: str) -> ImageJob:
        return self._jobs.get_image_job(segment_id) or ImageJob.none(segment_id)

    def retry(self, segment_id: str) -> ImageJob:
        """
        Move a failed job back to ``pending`` and schedule it again.

        Raises
        ------
        ImageJobFailure
            When the segment has no job or its job has not failed.
        """
        with self._lock:
            job = self._jobs.get_image_job(segment_id)
            if job is None:
                raise ImageJobFailure(segment_id, f"Segment {segment_id} has no image job.")
            if job.status is not ImageJobStatus.FAILED:
                raise ImageJobFailure(
                    segment_id,
                    f"Only failed image jobs can be retried; job is {job.status.value}.",
                )
            job = job.transition(
                ImageJobStatus.PENDING,
                retry_count=job.retry_count + 1,
                error=None,
                provider_handle=None,
            )
            self._jobs.save_image_job(job)

        logger.info("Retrying illustration for segment %s (attempt %d).", segment_id, job.retry_count + 1)
        self._schedule(segment_id)
        return job

    def on_provider_callback(self, segment_id: str, result: Mapping[str, Any]) -> ImageJob:
        """
        Finish a webhook-mode job from the provider's prediction payload.

        Payloads that are not terminal (``starting``/``processing``) leave the
        job unchanged.
        """
        status = str(result.get("status") or "").lower()
        if status not in {"succeeded", "failed", "canceled"}:
            return self.get_status(segment_id)

        job = self.get_status(segment_id)
        if job.status is not ImageJobStatus.GENERATING:
            raise ImageJobFailure(
                segment_id,
                f"Received a provider callback for segment {segment_id} while its job is "
                f"{job.status.value}.",
            )

        if status != "succeeded":
            return self._fail(segment_id, str(result.get("error") or f"Prediction {status}."))

        try:
            url = self._store_first_output(segment_id, result.get("output"))
        except Exception as exc:
            logger.exception("Storing callback output for segment %s failed.", segment_id)
            return self._fail(segment_id, f"{type(exc).__name__}: {exc}")
        return self._set_status(segment_id, ImageJobStatus.COMPLETED, image_url=url)

    def drain(self, timeout: float | None = None) -> bool:
        """
        Wait for scheduled jobs. Returns True when none are still running.
        """
        with self._lock:
            pending = list(self._futures)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def _schedule(self, segment_id: str) -> None:
        future = self._executor.submit(self._run, segment_id)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def _run(self, segment_id: str) -> None:
        job = self._set_status(segment_id, ImageJobStatus.GENERATING)
        prompt = IllustrationPrompt(positive=job.prompt, negative=job.negative_prompt)

        try:
            if not job.prompt:
                raise ValueError("Image prompt is empty.")

            if self._webhook_url:
                handle = self._generator.start_prediction(
                    prompt,
                    webhook=_webhook_for(self._webhook_url, segment_id),
                    seed=job.seed,
                )
                with self._lock:
                    current = self.get_status(segment_id)
                    self._jobs.save_image_job(replace(current, provider_handle=handle))
                logger.info("Started prediction %s for segment %s.", handle, segment_id)
                return

            outputs = self._generator.generate_image(prompt, seed=job.seed)
            url = self._store_first_output(segment_id, outputs)
        except Exception as exc:
            logger.exception("Illustration job for segment %s failed.", segment_id)
            self._fail(segment_id, f"{type(exc).__name__}: {exc}")
            return

        self._set_status(segment_id, ImageJobStatus.COMPLETED, image_url=url)
        logger.info("Illustration for segment %s completed.", segment_id)

    def _store_first_output(self, segment_id: str, raw_outputs: Any) -> str:
        outputs = normalize_image_outputs(raw_outputs)
        if not outputs:
            raise ValueError("Image provider returned no output.")
        return self._store.save(segment_id, outputs[0])

    def _fail(self, segment_id: str, error: str) -> ImageJob:
        return self._set_status(segment_id, ImageJobStatus.FAILED, error=error)

    def _set_status(self, segment_id: str, status: ImageJobStatus, **changes: Any) -> ImageJob:
        with self._lock:
            job = self._jobs.get_image_job(segment_id)
            if job is None:
                raise ImageJobFailure(segment_id, f"Segment {segment_id} has no image job.")
            job = job.transition(status, **changes)
            self._jobs.save_image_job(job)
            return job


def _webhook_for(base_url: str, segment_id: str) -> str:
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}segment_id={quote(segment_id)}"
