"""Wire paths and fixed messages of the Gradio queueing protocol."""

HF_API_URL = "https://huggingface.co/api/spaces"
HOST_URL = "host"
JWT_URL = "jwt"
SPACE_FETCHER_URL = "https://gradio-space-api-fetcher-v2.hf.space/api"

CONFIG_URL = "config"
API_INFO_URL = "info"
LOGIN_URL = "login"
RUN_URL = "run"
QUEUE_JOIN_URL = "queue/join"
QUEUE_DATA_URL = "queue/data"
CANCEL_URL = "cancel"
RESET_URL = "reset"
FILE_URL = "file="

SIGN_PARAM = "__sign"

STATE_COMPONENT = "state"

# Apps older than these versions use a different contract
LEGACY_API_INFO_VERSION = "3.30"
LEGACY_WS_HASH_VERSION = "3.6"

PROTOCOLS = ("ws", "sse", "sse_v1", "sse_v2", "sse_v2.1", "sse_v3")
SSE_PROTOCOLS = ("sse", "sse_v1", "sse_v2", "sse_v2.1", "sse_v3")
SHARED_STREAM_PROTOCOLS = ("sse_v1", "sse_v2", "sse_v2.1", "sse_v3")
DIFF_PROTOCOLS = ("sse_v2", "sse_v2.1", "sse_v3")

QUEUE_FULL_MSG = "This application is currently busy. Please try again. "
BROKEN_CONNECTION_MSG = "Connection errored out. "
CONFIG_ERROR_MSG = "Could not resolve app config. "
API_INFO_ERROR_MSG = "Could not get API info. "
SPACE_METADATA_ERROR_MSG = "Space metadata could not be loaded. "
INVALID_URL_MSG = "Invalid URL. A full URL path is required."
INVALID_CREDENTIALS_MSG = "Invalid credentials. Could not login. "
MISSING_CREDENTIALS_MSG = "Login credentials are required to access this space."
UNEXPECTED_ERROR_MSG = "An Unexpected Error Occurred!"
RESET_FAILED_MSG = (
    "The `/reset` endpoint could not be called. "
    "Subsequent endpoint results may be unreliable."
)

# Finished event ids remembered for dropping late frames, and event ids
# with frames buffered before their call registered
MAX_FINISHED_EVENTS = 256
MAX_PENDING_STREAM_EVENTS = 64
