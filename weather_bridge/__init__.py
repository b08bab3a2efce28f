"""Weather sync bridge: local weather endpoint, scheduler loop and measurement orchestrator."""

__version__ = "1.0.0"
