"""Endpoints and job defaults for the Render Network services."""

RENDER_API_ENDPOINTS = {
    "production": "https://api.rendernetwork.com/v1",
    "staging": "https://staging-api.rendernetwork.com/v1",
}

WEBSOCKET_ENDPOINTS = {
    "jobs": "wss://stream.rendernetwork.com/jobs",
    "nodes": "wss://stream.rendernetwork.com/nodes",
    "network": "wss://stream.rendernetwork.com/network",
}

DEFAULT_ENGINE = "octane"
DEFAULT_QUALITY = "production"
DEFAULT_OUTPUT_FORMAT = "exr"
DEFAULT_PRIORITY = "normal"
DEFAULT_FPS = 24
DEFAULT_AI_FRAMEWORK = "pytorch"

DEFAULT_POLL_INTERVAL_MS = 5000
DEFAULT_WAIT_TIMEOUT_MS = 3_600_000
