"""Support chatbot backend: Q&A answers, message coalescing and human handoff."""

__version__ = "0.1.0"
