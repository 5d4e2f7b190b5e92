"""Central configuration for endpoints, headers and protocol constants."""

import os

# Backend root, override with RYNK_API_BASE_URL env var
API_BASE_URL = os.environ.get("RYNK_API_BASE_URL", "https://rynk.io/api").rstrip("/")

# Seconds before a non-streaming request gives up
REQUEST_TIMEOUT = float(os.environ.get("RYNK_REQUEST_TIMEOUT", "60"))

# Endpoint families: guest sessions vs. authenticated mobile sessions
ENDPOINT_FAMILIES = {
    "guest": "/guest",
    "mobile": "/mobile",
}

# Pagination
MESSAGE_PAGE_SIZE = 30

# Response headers
CREDITS_HEADER = "x-guest-credits-remaining"
USER_MESSAGE_ID_HEADER = "x-user-message-id"
ASSISTANT_MESSAGE_ID_HEADER = "x-assistant-message-id"

# Raw error bodies are truncated to this many characters
ERROR_TEXT_LIMIT = 500

# Auxiliary job polling
JOB_POLL_INTERVAL = float(os.environ.get("RYNK_JOB_POLL_INTERVAL", "2.0"))
JOB_MAX_ATTEMPTS = int(os.environ.get("RYNK_JOB_MAX_ATTEMPTS", "60"))

# Stream protocol
SSE_PREFIX = "data: "
DONE_TOKEN = "[DONE]"
STRUCTURED_SENTINELS = (
    '{"type":"status"',
    '{"type":"search_results"',
    '{"type":"context_cards"',
    '{"type":"error"',
)

# Optimistic messages carry ids starting with this prefix
TEMP_ID_PREFIX = "temp_"

# Synthetic pill shown before the first byte arrives
INITIAL_STATUS = ("analyzing", "Thinking...")
