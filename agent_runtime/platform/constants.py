"""Fixed values shared across the agent runtime."""


# Stream retry policy
RETRY_INITIAL_DELAY_MS = 3000
RETRY_BACKOFF_FACTOR = 2
RETRY_MAX_RETRIES = 10

# Loop detection
DOOM_LOOP_FAILURE_THRESHOLD = 3
DOOM_LOOP_IDENTICAL_THRESHOLD = 5
DOOM_LOOP_SAME_TOOL_THRESHOLD = 6
TOOL_HISTORY_SIZE = 50
INTERACTIVE_TOOL_NAMES = frozenset({"question"})

# Finish reason reported by providers when the model stopped on its own
NATURAL_STOP_REASON = "stop"

SYSTEM_REMINDER_MARKER = "<system-reminder>"
QUEUED_USER_PREFIX = "<system-reminder>\nThe user sent the following message:\n"
QUEUED_USER_SUFFIX = (
    "\n\nPlease address this message and continue with your tasks.\n</system-reminder>"
)

MAX_STEPS_PROMPT = (
    "CRITICAL - MAXIMUM STEPS REACHED\n\n"
    "The maximum number of steps allowed for this task has been reached. "
    "Tools are disabled until the next user input. Respond with text only.\n\n"
    "Your response must include:\n"
    "- A summary of what has been accomplished so far\n"
    "- Any remaining tasks that were not completed\n"
    "- Recommendations for what should be done next"
)

INTERRUPTED_TOOL_RESULT = "Tool execution was interrupted"
MAX_ITERATIONS_NOTE = "Max iterations reached"
DEFAULT_RESOURCE_ID = "local"
