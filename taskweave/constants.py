"""Shared constants for taskweave."""

SUPPORTED_DEFINITION_VERSIONS = ("1.0.0", "1.0.1")
DEFAULT_DEFINITION_VERSION = "1.0.0"
DEFAULT_DEFINITIONS_PATH = "./workflows.json"

DEFAULT_CONCURRENCY = 5
DEFAULT_TIMEOUT_MS = 300_000
DEFAULT_MAX_CONCURRENT_WORKFLOWS = 10

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY_MS = 1_000
DEFAULT_MAX_DELAY_MS = 30_000

DEFAULT_HISTORY_LIMIT = 50
