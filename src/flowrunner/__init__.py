"""flowrunner — schedules encrypted automation flows as isolated worker processes."""

__version__ = "0.1.0"
