"""taskbatch - dependency-aware batch execution of coding-agent tasks.

Runs a batch of task descriptors with bounded concurrency, persists progress
so an interrupted batch can be resumed, and lets a running task escalate a
question to a supervising operator.
"""

__version__ = "0.1.0"
