"""Orchestration engine: plans, retry policy, store, orchestrator and resume."""
