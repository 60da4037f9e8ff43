"""Skillflow: plans, dispatches and recovers multi-step automation tasks."""

__version__ = "0.1.0"
