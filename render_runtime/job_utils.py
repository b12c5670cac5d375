"""Helpers for presenting job state."""

from __future__ import annotations

import math

from render_runtime.types import TERMINAL_JOB_STATUSES, FrameRange

_STATUS_TEXT = {
    "pending": "Pending - Waiting in queue",
    "queued": "Queued - Ready to start",
    "assigned": "Assigned - Sent to node",
    "preparing": "Preparing - Setting up scene",
    "rendering": "Rendering - In progress",
    "processing": "Processing - Post-processing output",
    "uploading": "Uploading - Saving results",
    "completed": "Completed - Ready for download",
    "failed": "Failed - Error occurred",
    "cancelled": "Cancelled - Stopped by user",
    "timeout": "Timeout - Exceeded time limit",
}


def format_job_status(status: str) -> str:
    """Human-readable description of a job status; unknown values pass through."""
    return _STATUS_TEXT.get(status.lower(), status)


def is_terminal_status(status: str) -> bool:
    return status.lower() in TERMINAL_JOB_STATUSES


def calculate_progress(current: float, total: float) -> float:
    """Percentage of ``current`` over ``total``, clamped to 0-100."""
    if total <= 0:
        return 0
    progress = current / total * 100
    return min(100, max(0, round(progress, 2)))


def format_duration(seconds: float) -> str:
    """Format seconds as ``42s``, ``3m 5s`` or ``2h 10m``."""
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        minutes = math.floor(seconds / 60)
        secs = round(seconds % 60)
        return f"{minutes}m {secs}s"
    hours = math.floor(seconds / 3600)
    minutes = math.floor((seconds % 3600) / 60)
    return f"{hours}h {minutes}m"


def parse_frame_range(value: str) -> FrameRange:
    """Parse ``"1-100"``, ``"50"`` or ``"1,5,10"`` into a start/end range.

    Raises:
        ValueError: If the text holds no frame numbers or a bad one.
    """
    text = value.strip()
    if not text:
        raise ValueError("Empty frame range")

    if "," in text:
        frames = [int(part) for part in text.split(",") if part.strip()]
        return FrameRange(start=min(frames), end=max(frames))

    if "-" in text:
        start, _, end = text.partition("-")
        return FrameRange(start=int(start), end=int(end))

    frame = int(text)
    return FrameRange(start=frame, end=frame)
