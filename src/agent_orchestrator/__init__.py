"""Orchestration of CLI coding agents: discovery, launch, output parsing and task lifecycle."""

__version__ = "0.1.0"
