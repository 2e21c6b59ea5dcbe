"""sqlmigrate - forward-only SQL migrations with checkpointed execution."""

__version__ = "0.3.0"
