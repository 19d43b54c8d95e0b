"""Run-scoped resources: budget tracking, managed processes and the trace recorder."""
