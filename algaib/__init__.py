"""
Algaib - Multi-agent orchestration for command-line coding assistants.

This package decomposes a natural-language task into a plan of subtasks,
executes each subtask through an external coding agent running inside a
pseudo-terminal, and mediates the permission prompts those agents emit.
"""

__version__ = "0.1.0"
