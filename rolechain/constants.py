"""Shared constants for rolechain."""

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
DEFAULT_MODEL = "gpt-4o-mini"

# Completion calls may be slow; a timeout fails the step.
DEFAULT_STEP_TIMEOUT = 300.0

DEFAULT_HISTORY_LIMIT = 20

UPLOADS_URL_PREFIX = "/uploads/"

IMAGE_MARKER = "JSON_IMAGE:"
REASONING_START = "[REASONING]"
REASONING_END = "[/REASONING]"

PARALLEL_RESULT_HEADER = "### Result from {role_name}:"
