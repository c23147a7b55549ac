"""Execution runtime: state store, supervisor, executors and scheduler."""
