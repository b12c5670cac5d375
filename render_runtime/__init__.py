"""
Render Network Runtime SDK for Python.

Async client for submitting and tracking render and AI jobs on the
Render Network, plus a self-healing WebSocket event stream.

Example::

    from render_runtime import RenderRuntime, RenderJobConfig, StreamEventType

    runtime = RenderRuntime(api_key="rk_...", creator_account_id="creator-1")

    runtime.on(StreamEventType.JOB_COMPLETED, lambda event: print(event.data))
    await runtime.connect("jobs")

    submitted = await runtime.jobs.submit_render_job(RenderJobConfig(scene_id="scene-1"))
    if submitted.success:
        await runtime.stream.subscribe_to_job(submitted.data.id)
        done = await runtime.jobs.wait_for_completion(submitted.data.id)
        print(done.success, done.error)

    await runtime.disconnect()
"""

from render_runtime.client import RenderApiClient, RenderRuntime
from render_runtime.events import StreamConnectionError, StreamManager, wait_for_event
from render_runtime.jobs import JobOrchestrator, derive_progress
from render_runtime.job_utils import (
    calculate_progress,
    format_duration,
    format_job_status,
    is_terminal_status,
    parse_frame_range,
)
from render_runtime.types import (
    AIInferenceConfig,
    AITrainingConfig,
    AnimationJobConfig,
    ApiResponse,
    ConnectionState,
    CostEstimate,
    ErrorKind,
    FrameInfo,
    FrameRange,
    GpuRequirements,
    InferenceResults,
    JobFrames,
    JobHistory,
    JobInfo,
    JobProgress,
    JobStatus,
    RenderJobConfig,
    Resolution,
    RuntimeConfig,
    StreamConfig,
    StreamEvent,
    StreamEventType,
)

__all__ = [
    "RenderRuntime",
    "RenderApiClient",
    "StreamManager",
    "StreamConnectionError",
    "wait_for_event",
    "JobOrchestrator",
    "derive_progress",
    "calculate_progress",
    "format_duration",
    "format_job_status",
    "is_terminal_status",
    "parse_frame_range",
    "AIInferenceConfig",
    "AITrainingConfig",
    "AnimationJobConfig",
    "ApiResponse",
    "ConnectionState",
    "CostEstimate",
    "ErrorKind",
    "FrameInfo",
    "FrameRange",
    "GpuRequirements",
    "InferenceResults",
    "JobFrames",
    "JobHistory",
    "JobInfo",
    "JobProgress",
    "JobStatus",
    "RenderJobConfig",
    "Resolution",
    "RuntimeConfig",
    "StreamConfig",
    "StreamEvent",
    "StreamEventType",
]

__version__ = "0.1.0"
