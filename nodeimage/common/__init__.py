"""Shared building blocks: command execution and the pipeline data model."""
