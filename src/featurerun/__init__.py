"""Resumable multi-phase feature runs driven by an external coding agent."""

__version__ = "0.1.0"
