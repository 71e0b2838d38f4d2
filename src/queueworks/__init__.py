"""Durable task and workflow job queue."""

__version__ = "0.1.0"
