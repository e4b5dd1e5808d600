"""Conduit: streaming decode and tool orchestration for language-model backends."""

__version__ = "0.3.0"
