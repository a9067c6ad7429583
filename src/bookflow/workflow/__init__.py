"""Workflow state machine and foreground operations."""
