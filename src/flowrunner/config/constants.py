"""Paths and default values used across the project."""

from pathlib import Path

# Base directory for all flowrunner data
FLOWRUNNER_HOME = Path.home() / ".flowrunner"

# Sub-directories
JOBS_DIR = FLOWRUNNER_HOME / "jobs"
LOGS_DIR = FLOWRUNNER_HOME / "logs"

# Generated artifact name inside each job directory
DEFAULT_SCRIPT_NAME = "script.py"

# Start dates closer than this are treated as "already started"
START_RESERVE_SECONDS = 10

# Grace period between a cancel message and terminate() on stop
DEFAULT_STOP_TIMEOUT = 5.0

# Engine event names
EVENT_WORKER_CREATED = "worker created"
EVENT_WORKER_DELETED = "worker deleted"
