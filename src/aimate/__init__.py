"""AIMate: local multi-tier memory for an AI assistant."""

__version__ = "0.1.0"
