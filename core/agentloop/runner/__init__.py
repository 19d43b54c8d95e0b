"""Tool registry and the tagged outcomes tool executors produce."""
