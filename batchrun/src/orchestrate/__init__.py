"""
Orchestration module for a complete batch run.

This module coordinates the full workflow:
1. Stage inputs with time-bounded read URLs
2. Provision pool and job, submit one task per input
3. Monitor completion, collect outputs, tear down
"""

from batchrun.src.orchestrate.run_orchestrator import BatchRunOrchestrator

__all__ = ["BatchRunOrchestrator"]
