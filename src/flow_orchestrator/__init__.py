"""flow-orchestrator: multi-phase orchestration of Claude CLI workflows."""
