"""Default values shared across gassapi modules."""

DEFAULT_BACKEND_URL = "http://mapi.gass.web.id"
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_MAX_CONCURRENCY = 5
DEFAULT_HISTORY_LIMIT = 10
DEFAULT_HISTORY_MAX_AGE = 24 * 60 * 60
DEFAULT_SESSION_MAX_IDLE = 60 * 60

HIGH_CONCURRENCY_WARNING = 20
LOW_TIMEOUT_WARNING = 1.0

USER_AGENT = "GASSAPI-Flow-Runner/2.0"

CONFIG_FILE_NAMES = ("gassapi.yaml", "gassapi.yml", "gassapi.json", ".gassapi.json")
CONFIG_SEARCH_DEPTH = 10
