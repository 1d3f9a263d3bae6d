"""Job orchestration: manager, processor registry and timers."""
