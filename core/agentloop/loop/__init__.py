"""Agent loop: run state, controller, context compaction, stuck detection and completion."""
