"""Cross-process Langfuse tracing for agent runtime lifecycle hooks."""

__version__ = "0.1.0"
