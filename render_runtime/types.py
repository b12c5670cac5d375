"""
Pydantic models for the Render Network Runtime SDK.

Wire payloads use camelCase; models expose snake_case attributes and
accept either spelling on input.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


# ============================================================
#  Configuration
# ============================================================


class StreamConfig(BaseModel):
    """WebSocket stream and reconnection settings."""

    endpoint: str | None = None
    reconnect: bool = True
    reconnect_interval_ms: int = 5000
    max_reconnect_attempts: int = 10


class RuntimeConfig(BaseModel):
    """Configuration for connecting to the Render Network API."""

    api_key: str
    creator_account_id: str
    api_endpoint: str = "https://api.rendernetwork.com/v1"
    timeout_seconds: float = 30.0
    stream: StreamConfig = Field(default_factory=StreamConfig)


# ============================================================
#  Results
# ============================================================


class ErrorKind(str, Enum):
    """Why an :class:`ApiResponse` failed."""

    NETWORK = "network"
    HTTP = "http"
    NOT_FOUND = "not_found"
    INVALID_RESPONSE = "invalid_response"
    INVALID_REQUEST = "invalid_request"
    JOB_FAILED = "job_failed"
    TIMEOUT = "timeout"


class ApiResponse(BaseModel, Generic[T]):
    """Uniform result of a REST call or a job workflow.

    Failures are data: check ``success`` rather than catching exceptions.
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "ApiResponse[Any]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, kind: ErrorKind, data: Any = None) -> "ApiResponse[Any]":
        return cls(success=False, error=error, error_kind=kind, data=data)


# ============================================================
#  Streaming
# ============================================================


ChannelGroup = Literal["jobs", "nodes", "network"]


class ConnectionState(str, Enum):
    """Lifecycle of a :class:`~render_runtime.events.StreamManager`."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class StreamEventType(str, Enum):
    """Event tags pushed by the stream service (``category:action``)."""

    JOB_SUBMITTED = "job:submitted"
    JOB_STARTED = "job:started"
    JOB_PROGRESS = "job:progress"
    JOB_COMPLETED = "job:completed"
    JOB_FAILED = "job:failed"
    JOB_CANCELLED = "job:cancelled"
    FRAME_COMPLETED = "frame:completed"
    FRAME_FAILED = "frame:failed"
    NODE_ONLINE = "node:online"
    NODE_OFFLINE = "node:offline"
    NODE_JOB_ASSIGNED = "node:job_assigned"
    NODE_JOB_COMPLETED = "node:job_completed"
    NODE_EARNINGS = "node:earnings"
    WALLET_RECEIVED = "wallet:received"
    WALLET_SENT = "wallet:sent"
    ESCROW_DEPOSIT = "escrow:deposit"
    ESCROW_WITHDRAW = "escrow:withdraw"
    STAKING_ADDED = "staking:added"
    STAKING_REMOVED = "staking:removed"
    STAKING_REWARDS = "staking:rewards"
    NETWORK_STATS = "network:stats"
    AI_STARTED = "ai:started"
    AI_COMPLETED = "ai:completed"
    AI_RESULTS = "ai:results"


class StreamEvent(BaseModel):
    """A single event delivered over the WebSocket stream.

    ``type`` is kept as a plain string so events with tags this SDK does
    not know yet still reach wildcard handlers.
    """

    type: str
    timestamp: str
    data: Any = None

    model_config = {"frozen": True}

    @property
    def category(self) -> str:
        return self.type.split(":", 1)[0]

    @property
    def action(self) -> str:
        return self.type.split(":", 1)[1] if ":" in self.type else ""


# ============================================================
#  Jobs
# ============================================================


class JobStatus(str, Enum):
    """Remote job lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    ASSIGNED = "assigned"
    PREPARING = "preparing"
    RENDERING = "rendering"
    PROCESSING = "processing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


TERMINAL_JOB_STATUSES = frozenset(
    status.value
    for status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.TIMEOUT)
)


class JobFrames(BaseModel):
    """Aggregate frame counters for a job."""

    total: int
    completed: int = 0
    failed: int = 0


class JobCost(BaseModel):
    """Estimated and actual job cost."""

    estimated: float = 0
    actual: float = 0
    currency: str = "RENDER"


class JobInfo(BaseModel):
    """Point-in-time snapshot of a remote job."""

    id: str
    status: str
    progress: float = 0
    created_at: str | None = Field(None, alias="createdAt")
    started_at: str | None = Field(None, alias="startedAt")
    completed_at: str | None = Field(None, alias="completedAt")
    frames: JobFrames | None = None
    cost: JobCost | None = None
    node_id: str | None = Field(None, alias="nodeId")
    outputs: list[str] = []

    model_config = {"populate_by_name": True}


class JobProgress(BaseModel):
    """Progress derived from a :class:`JobInfo` snapshot."""

    job_id: str = Field(alias="jobId")
    status: str
    progress: float
    current_frame: int | None = Field(None, alias="currentFrame")
    total_frames: int | None = Field(None, alias="totalFrames")
    estimated_time_remaining: int | None = Field(None, alias="estimatedTimeRemaining")
    current_node: str | None = Field(None, alias="currentNode")

    model_config = {"populate_by_name": True}


FrameStatus = Literal["pending", "rendering", "completed", "failed"]


class FrameInfo(BaseModel):
    """Status of a single frame.

    Built from the aggregate frame counter, so only good enough for
    coarse display.
    """

    frame_number: int = Field(alias="frameNumber")
    status: FrameStatus
    render_time: float | None = Field(None, alias="renderTime")
    output_url: str | None = Field(None, alias="outputUrl")
    error: str | None = None

    model_config = {"populate_by_name": True}


class JobHistory(BaseModel):
    """A page of jobs."""

    jobs: list[JobInfo] = []
    total: int = 0


class CostBreakdown(BaseModel):
    gpu_cost: float = Field(alias="gpuCost")
    priority_cost: float = Field(alias="priorityCost")
    storage_cost: float = Field(alias="storageCost")

    model_config = {"populate_by_name": True}


class CostEstimate(BaseModel):
    """Cost estimate returned before submission."""

    estimated: float
    min: float
    max: float
    currency: str
    breakdown: CostBreakdown | None = None


class TokenUsage(BaseModel):
    input: int
    output: int


class InferenceResults(BaseModel):
    """Output of an AI inference job."""

    output: Any = None
    token_usage: TokenUsage | None = Field(None, alias="tokenUsage")
    latency: float = 0

    model_config = {"populate_by_name": True}


# ============================================================
#  Job configuration
# ============================================================


Engine = Literal["octane", "cycles", "redshift", "arnold"]
Quality = Literal["draft", "preview", "production", "highQuality", "ultra"]
Priority = Literal["low", "normal", "high", "priority"]


class Resolution(BaseModel):
    width: int
    height: int


class FrameRange(BaseModel):
    start: int
    end: int
    step: int | None = None


class RenderJobConfig(BaseModel):
    """Settings for a still or sequence render."""

    scene_id: str
    engine: Engine | None = None
    quality: Quality | None = None
    output_format: str | None = None
    resolution: Resolution | None = None
    frames: FrameRange | None = None
    samples: int | None = None
    max_bounces: int | None = None
    denoising: bool | None = None
    priority: Priority | None = None
    gpu_preference: str | None = None
    max_cost: float | None = None
    timeout: int | None = None
    callback: str | None = None


class AnimationJobConfig(RenderJobConfig):
    """Render settings plus animation output options."""

    fps: int | None = None
    motion_blur: bool | None = None
    motion_blur_samples: int | None = None
    output_video: bool | None = None
    video_codec: Literal["h264", "h265", "prores"] | None = None


class GpuRequirements(BaseModel):
    min_vram: int | None = Field(None, alias="minVram")
    preferred_gpu: str | None = Field(None, alias="preferredGpu")
    count: int | None = None

    model_config = {"populate_by_name": True}


class AIInferenceConfig(BaseModel):
    """Settings for an AI inference job."""

    model_id: str
    input: Any
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: list[str] | None = None
    stream: bool | None = None
    gpu_requirements: GpuRequirements | None = None
    timeout: int | None = None
    priority: str | None = None

    model_config = {"protected_namespaces": ()}


class AITrainingConfig(BaseModel):
    """Settings for an AI training job."""

    model_id: str
    dataset_id: str
    epochs: int | None = None
    batch_size: int | None = None
    learning_rate: float | None = None
    optimizer: str | None = None
    gpu_requirements: GpuRequirements | None = None
    checkpoint_interval: int | None = None
    validation_split: float | None = None

    model_config = {"protected_namespaces": ()}
