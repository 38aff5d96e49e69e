"""Declarative stack orchestration engine.

A template is turned into a ResourceGraph, diffed against the recorded
stack by the ChangeSetPlanner, and executed batch by batch by the
LifecycleExecutor. Every provider call is journaled, so failures roll back
and interrupted runs can be recovered. Engine (engine.orchestrator) is the
entry point.
"""
