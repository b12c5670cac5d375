"""
Job workflows on top of the Render Network REST API.

Submission with defaults, progress and ETA derivation, frame status
approximation, retry, and polling until a job settles. Every method
returns an :class:`~render_runtime.types.ApiResponse`; nothing here
raises for remote failures.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable

from render_runtime.constants import (
    DEFAULT_AI_FRAMEWORK,
    DEFAULT_ENGINE,
    DEFAULT_FPS,
    DEFAULT_OUTPUT_FORMAT,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_PRIORITY,
    DEFAULT_QUALITY,
    DEFAULT_WAIT_TIMEOUT_MS,
)
from render_runtime.types import (
    AIInferenceConfig,
    AITrainingConfig,
    AnimationJobConfig,
    ApiResponse,
    CostEstimate,
    ErrorKind,
    FrameInfo,
    InferenceResults,
    JobHistory,
    JobInfo,
    JobProgress,
    JobStatus,
    RenderJobConfig,
)

if TYPE_CHECKING:
    from render_runtime.client import RenderApiClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[JobProgress], Awaitable[None] | None]

# Remote states that end a wait_for_completion() as a job failure
_FAILED_STATUSES = frozenset(
    {JobStatus.FAILED.value, JobStatus.CANCELLED.value, JobStatus.TIMEOUT.value}
)


def _dump(model: Any) -> dict[str, Any] | None:
    if model is None:
        return None
    return model.model_dump(by_alias=True, exclude_none=True)


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def derive_progress(job: JobInfo, now: datetime | None = None) -> JobProgress:
    """Build a :class:`JobProgress` from one snapshot.

    The ETA is only set while rendering with both ``started_at`` and
    ``frames`` known: remaining frames times the average time per
    completed frame (at least one frame is assumed done).
    """
    progress = JobProgress(
        job_id=job.id,
        status=job.status,
        progress=job.progress,
        current_frame=job.frames.completed if job.frames else None,
        total_frames=job.frames.total if job.frames else None,
        current_node=job.node_id,
    )

    if job.status == JobStatus.RENDERING and job.started_at and job.frames:
        started = _parse_timestamp(job.started_at)
        if started is not None:
            elapsed = ((now or datetime.now(timezone.utc)) - started).total_seconds()
            frames_done = max(job.frames.completed, 1)
            frames_remaining = max(job.frames.total - frames_done, 0)
            eta = frames_remaining * max(elapsed, 0.0) / frames_done
            progress.estimated_time_remaining = round(eta)

    return progress


class JobOrchestrator:
    """Higher-level render and AI job workflows."""

    def __init__(self, api: RenderApiClient) -> None:
        self._api = api

    # ---- Render jobs ----

    async def submit_render_job(self, config: RenderJobConfig) -> ApiResponse[JobInfo]:
        """Submit a 3D render job, filling in engine, quality, format and priority."""
        params = self._base_job_params(config)
        params["metadata"] = {
            "samples": config.samples,
            "maxBounces": config.max_bounces,
            "denoising": config.denoising,
            "timeout": config.timeout,
            "callback": config.callback,
        }
        return await self._api.create_job(params)

    async def submit_animation_job(self, config: AnimationJobConfig) -> ApiResponse[JobInfo]:
        """Submit an animation render job (24 fps unless configured)."""
        params = self._base_job_params(config)
        params["metadata"] = {
            "type": "animation",
            "fps": config.fps or DEFAULT_FPS,
            "motionBlur": config.motion_blur,
            "motionBlurSamples": config.motion_blur_samples,
            "outputVideo": config.output_video,
            "videoCodec": config.video_codec,
            "samples": config.samples,
            "maxBounces": config.max_bounces,
            "denoising": config.denoising,
        }
        return await self._api.create_job(params)

    @staticmethod
    def _base_job_params(config: RenderJobConfig) -> dict[str, Any]:
        return {
            "sceneId": config.scene_id,
            "engine": config.engine or DEFAULT_ENGINE,
            "quality": config.quality or DEFAULT_QUALITY,
            "outputFormat": config.output_format or DEFAULT_OUTPUT_FORMAT,
            "resolution": _dump(config.resolution),
            "frames": _dump(config.frames),
            "priority": config.priority or DEFAULT_PRIORITY,
            "gpuPreference": config.gpu_preference,
            "maxCost": config.max_cost,
        }

    async def get_job_progress(self, job_id: str) -> ApiResponse[JobProgress]:
        result = await self._api.get_job(job_id)
        if not result.success or result.data is None:
            return ApiResponse[JobProgress].fail(
                result.error or f"Job {job_id} not found",
                result.error_kind or ErrorKind.NOT_FOUND,
            )
        return ApiResponse[JobProgress].ok(derive_progress(result.data))

    async def get_frame_statuses(
        self,
        job_id: str,
        frame_filter: Iterable[int | str] | None = None,
    ) -> ApiResponse[list[FrameInfo]]:
        """Per-frame statuses approximated from the aggregate frame counter.

        Frames are numbered from 1. Frames below the completed count are
        ``completed``, the next one is ``rendering`` while the job renders,
        the rest are ``pending``. The API has no true per-frame status, so
        treat this as display-only.
        """
        requested: set[int] | None = None
        if frame_filter is not None:
            requested = set()
            for value in frame_filter:
                try:
                    requested.add(int(str(value).strip()))
                except ValueError:
                    return ApiResponse[list[FrameInfo]].fail(
                        f"Invalid frame number: {value!r}", ErrorKind.INVALID_REQUEST
                    )

        result = await self._api.get_job(job_id)
        if not result.success or result.data is None:
            return ApiResponse[list[FrameInfo]].fail(
                result.error or f"Job {job_id} not found",
                result.error_kind or ErrorKind.NOT_FOUND,
            )

        job = result.data
        frames: list[FrameInfo] = []
        if job.frames:
            completed = job.frames.completed
            for index in range(job.frames.total):
                frame_number = index + 1
                if requested is not None and frame_number not in requested:
                    continue
                if index < completed:
                    status = "completed"
                elif index == completed and job.status == JobStatus.RENDERING:
                    status = "rendering"
                else:
                    status = "pending"
                frames.append(FrameInfo(frame_number=frame_number, status=status))

        return ApiResponse[list[FrameInfo]].ok(frames)

    async def estimate_cost(self, config: RenderJobConfig) -> ApiResponse[CostEstimate]:
        params = {
            "sceneId": config.scene_id,
            "engine": config.engine,
            "quality": config.quality,
            "outputFormat": config.output_format,
            "resolution": _dump(config.resolution),
            "frames": _dump(config.frames),
            "priority": config.priority,
            "gpuPreference": config.gpu_preference,
        }
        return await self._api.estimate_job_cost(params)

    async def retry_job(
        self,
        job_id: str,
        retry_failed_frames_only: bool | None = None,
        new_priority: str | None = None,
    ) -> ApiResponse[JobInfo]:
        """Resubmit a job under a new id, tagged with ``retryOf``.

        The original job is only read, never modified.
        """
        original = await self._api.get_job(job_id)
        if not original.success or original.data is None:
            reason = f": {original.error}" if original.error else ""
            kind = original.error_kind
            if kind is None or kind is ErrorKind.HTTP:
                kind = ErrorKind.NOT_FOUND
            return ApiResponse[JobInfo].fail(f"Original job not found{reason}", kind)

        logger.info("Retrying job %s", job_id)
        return await self._api.create_job(
            {
                "metadata": {
                    "retryOf": job_id,
                    "retryFailedFramesOnly": retry_failed_frames_only,
                },
                "priority": new_priority or DEFAULT_PRIORITY,
            }
        )

    # ---- AI jobs ----

    async def submit_inference_job(self, config: AIInferenceConfig) -> ApiResponse[JobInfo]:
        params = {
            "modelId": config.model_id,
            "input": config.input,
            "maxTokens": config.max_tokens,
            "temperature": config.temperature,
            "gpuRequirements": _dump(config.gpu_requirements),
            "timeout": config.timeout,
            "priority": config.priority,
            "metadata": {
                "topP": config.top_p,
                "topK": config.top_k,
                "stopSequences": config.stop_sequences,
                "stream": config.stream,
            },
        }
        return await self._api.submit_ai_job(params)

    async def submit_training_job(self, config: AITrainingConfig) -> ApiResponse[JobInfo]:
        params = {
            "modelId": config.model_id,
            "framework": DEFAULT_AI_FRAMEWORK,
            "gpuRequirements": _dump(config.gpu_requirements),
            "metadata": {
                "type": "training",
                "datasetId": config.dataset_id,
                "epochs": config.epochs,
                "batchSize": config.batch_size,
                "learningRate": config.learning_rate,
                "optimizer": config.optimizer,
                "checkpointInterval": config.checkpoint_interval,
                "validationSplit": config.validation_split,
            },
        }
        return await self._api.submit_ai_job(params)

    async def get_inference_results(self, job_id: str) -> ApiResponse[InferenceResults]:
        return await self._api.get_ai_job_results(job_id)

    # ---- Job management ----

    async def cancel_job(self, job_id: str) -> ApiResponse[Any]:
        return await self._api.cancel_job(job_id)

    async def get_job_history(
        self,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> ApiResponse[JobHistory]:
        return await self._api.list_jobs(status=status, limit=limit, offset=offset)

    async def wait_for_completion(
        self,
        job_id: str,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS,
        on_progress: ProgressCallback | None = None,
    ) -> ApiResponse[JobInfo]:
        """Poll a job until it completes, fails, or ``timeout_ms`` runs out.

        ``on_progress`` is called with every snapshot before its status is
        checked. A failed poll ends the wait with that failure. Failed or
        cancelled jobs come back as ``JOB_FAILED`` with the last snapshot
        in ``data``; running out of time is ``TIMEOUT``.
        """
        deadline = time.monotonic() + timeout_ms / 1000.0

        while time.monotonic() < deadline:
            result = await self._api.get_job(job_id)
            if not result.success or result.data is None:
                return ApiResponse[JobInfo].fail(
                    result.error or f"Job {job_id} not found",
                    result.error_kind or ErrorKind.NOT_FOUND,
                )

            job = result.data
            if on_progress is not None:
                callback_result = on_progress(derive_progress(job))
                if asyncio.iscoroutine(callback_result):
                    await callback_result

            if job.status == JobStatus.COMPLETED:
                return ApiResponse[JobInfo].ok(job)
            if job.status in _FAILED_STATUSES:
                return ApiResponse[JobInfo].fail(f"Job {job.status}", ErrorKind.JOB_FAILED, data=job)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval_ms / 1000.0, remaining))

        logger.warning("Gave up waiting for job %s after %d ms", job_id, timeout_ms)
        return ApiResponse[JobInfo].fail("Job timeout exceeded", ErrorKind.TIMEOUT)
