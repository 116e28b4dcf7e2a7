"""Clubhouse - orchestration engine for coding-agent CLI processes."""
