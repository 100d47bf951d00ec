"""Constants used across swarm-conductor.

This module defines shared constants to ensure consistency.
"""

import re

# Push channel
NOTIFY_SOCKET_PATH = "/tmp/swarm-conductor.sock"
WORKER_COMPLETE_TYPE = "worker-complete"

# Issue ids end up in paths, branch names and tmux session names
ISSUE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

# tmux naming
WORKER_SESSION_PREFIX = "worker-"
GATE_SESSION_PREFIX = "chk-"

# Gate checkpoint files live here, relative to the issue workspace
CHECKPOINT_DIR = ".checkpoints"

# Environment passed to every spawned worker
ENV_ISSUE_ID = "CONDUCTOR_ISSUE_ID"
ENV_SOCKET = "CONDUCTOR_SOCKET"
ENV_STORE = "CONDUCTOR_STORE"
ENV_WORKSPACE = "CONDUCTOR_WORKSPACE"

# Internal settings (not user-configurable)
SEND_KEYS_ENTER_DELAY_S = 0.3
TMUX_COMMAND_TIMEOUT_S = 10.0
BUILD_OUTPUT_TAIL_CHARS = 2000
SUMMARY_MAX_CHARS = 500

DOCS_ONLY_SUFFIXES = (".md", ".markdown")
