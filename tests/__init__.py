"""
flow-orchestrator test suite.

Agent processes are replaced by the in-memory fakes in helpers.py, so no
test spawns the Claude CLI.
"""
