"""Differential fuzz orchestration: operations, reference oracle, client protocol."""
