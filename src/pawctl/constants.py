from __future__ import annotations

# Window tokens
TOKEN_LENGTH = 12

# Poll loops
WAIT_POLL_INTERVAL_SECONDS = 2.0
PR_POLL_INTERVAL_SECONDS = 30.0
LAUNCH_GRACE_SECONDS = 30.0

# Terminal multiplexer
TMUX_SOCKET_PREFIX = "paw-"
TMUX_COMMAND_TIMEOUT_SECONDS = 10.0
AGENT_PANE_SUFFIX = ".0"
RESUME_STAMP_OPTION = "@pawctl_resumed_at"
SHELL_COMMANDS = frozenset({"bash", "zsh", "sh", "fish", "tcsh", "csh", "ksh", "dash"})

# Version control
GIT_COMMAND_TIMEOUT_SECONDS = 120.0

# Content capture and detection
CAPTURE_LINES = 200
WAIT_MARKER = "PAW_WAITING"
DONE_MARKER = "PAW_DONE"
SEGMENT_MARKER = "⏺"
ASK_USER_QUESTION = "AskUserQuestion"
WAIT_MARKER_MAX_DISTANCE = 8
ASK_USER_MAX_DISTANCE = 32
DONE_MARKER_MAX_DISTANCE = 8
QUESTION_LOOKBACK_LINES = 5
UI_MARKERS = (
    "Enter to select",
    "Tab/Arrow keys to navigate",
    "Esc to cancel",
    "Type something.",
)
UI_HINTS = (
    "enter to select",
    "tab/arrow keys",
    "esc to cancel",
    "space to toggle",
    "navigate",
)
UI_HEADER_PREFIXES = ("□", "■", "☐", "☑", "◯", "◉", "○", "●")
UI_OPTION_SELECTORS = (">", "❯")

# Notifications
NOTIFY_MIN_ACTIONS = 2
NOTIFY_MAX_ACTIONS = 5
NOTIFY_TIMEOUT_SECONDS = 30
DISPLAY_MESSAGE_MS = 3000

# Merge/sync
MERGE_LOCK_NAME = "merge.lock"
MERGE_LOCK_MAX_RETRIES = 30
MERGE_LOCK_RETRY_INTERVAL_SECONDS = 1.0
RECONCILE_LOCK_NAME = "reconcile.lock"
RESOLVER_TIMEOUT_SECONDS = 600.0
CLAUDE_LINK = ".claude"
COMMIT_MESSAGE_MERGE = "feat: {task}"
COMMIT_MESSAGE_AUTO_COMMIT_MERGE = "chore: auto-commit before merge\n\n{stat}"
COMMIT_MESSAGE_RESOLVED = "feat: {task} (conflicts resolved)"
STASH_MESSAGE = "pawctl-merge-{task}"

# Workspace layout
PAW_DIR_NAME = ".paw"
AGENTS_DIR_NAME = "agents"
HISTORY_DIR_NAME = "history"
TASK_FILE_NAME = "task"
TAB_LOCK_DIR_NAME = ".tab-lock"
WINDOW_ID_FILE_NAME = "window_id"
PR_FILE_NAME = ".pr"
SESSION_MARKER_FILE_NAME = ".session-started"
START_SCRIPT_NAME = "start-agent"
VERIFY_JSON_FILE_NAME = ".verify.json"
VERIFY_LOG_FILE_NAME = ".verify.log"
HOOK_NAMES = ("pre-task", "post-task", "pre-merge", "post-merge")
