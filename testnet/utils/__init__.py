"""Utility modules shared across the orchestrator."""
