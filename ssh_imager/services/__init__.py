"""Outer-surface collaborators: remote execution, compression, mail, orchestration."""
