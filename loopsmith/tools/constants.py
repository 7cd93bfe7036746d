"""Constants for Loopsmith tools.

Loopsmith Principle: Named Constants Over Magic Numbers
"""

# =============================================================================
# BANNED COMMANDS
# =============================================================================

# Programs the Bash tool refuses to run, whatever the permission settings.
BANNED_COMMANDS = {
    "alias",
    "curl",
    "curlie",
    "wget",
    "axel",
    "aria2c",
    "nc",
    "telnet",
    "lynx",
    "w3m",
    "links",
    "httpie",
    "xh",
    "http-prompt",
    "chrome",
    "firefox",
    "safari",
}

# Whole command lines that are never run.
ALWAYS_BLOCKED_COMMANDS = {
    "rm -rf /",
    "rm -rf /*",
    "rm -rf ~",
    "rm -rf ~/*",
    "mkfs",
    "chmod -R 777 /",
    ":(){ :|:& };:",
}

# =============================================================================
# SIZE LIMITS
# =============================================================================

MAX_FILE_SIZE = 256_000  # 256KB - Maximum file size to read
MAX_LINES_TO_READ = 2_000  # Default line limit for file reads
MAX_LINE_LENGTH = 2_000  # Longer lines are cut when read
MAX_OUTPUT_CHARS = 30_000  # Maximum shell output kept per stream
MAX_SEARCH_RESULTS = 100  # Maximum glob / grep results
MAX_DIRECTORY_ITEMS = 1_000  # Maximum directory listing items
MAX_GREP_LINE_LENGTH = 200  # Matched lines are cut to this length

# =============================================================================
# SHELL
# =============================================================================

DEFAULT_COMMAND_TIMEOUT_MS = 2 * 60 * 1000
MAX_COMMAND_TIMEOUT_MS = 10 * 60 * 1000
