"""Agent turn orchestration."""
