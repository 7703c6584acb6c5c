STATE_DIR_NAME = ".plan_runner"
CONFIG_FILE = "config.yaml"
PLAN_FILE = "plan.yaml"
PLAN_LOCK_FILE = "plan.lock"
MEMORY_FILE = "memories.yaml"
AGENTS_FILE = "agents.yaml"
EVENTS_FILE = "events.jsonl"
WINDOWS_LOCK_BYTES = 4096

DEFAULT_MODEL = "gpt-5"
DEFAULT_TTL_DAYS = 28
DEFAULT_MAX_MEMORIES_PER_PROMPT = 5
DEFAULT_SEARCH_LIMIT = 10
DEFAULT_LIST_LIMIT = 20
DEFAULT_MAX_ITERATIONS = 50
DEFAULT_EVENT_HISTORY = 500
DEFAULT_COMPLEXITY = "moderate"

# Confidence thresholds for recommended memory actions
KEEP_CONFIDENCE = 0.8
REVIEW_CONFIDENCE = 0.4

SNIPPET_MATCH_THRESHOLD = 0.8
SNIPPET_WINDOW_LINES = 5

NO_RESPONSE_ERROR = "No response from the generation session"
CANCELLED_ERROR = "Cancelled before all tasks completed"

SEARCH_STOP_WORDS = frozenset(
    {
        "and",
        "the",
        "for",
        "with",
        "that",
        "this",
        "from",
        "into",
        "use",
        "add",
        "are",
        "was",
        "should",
        "when",
        "will",
    }
)
