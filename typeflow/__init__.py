"""Typeflow - workflow execution and debug engine."""

__version__ = "0.1.0"
