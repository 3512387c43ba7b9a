"""Flowrunner: a workflow execution engine for trigger/action/condition graphs."""

__version__ = "1.0.0"
