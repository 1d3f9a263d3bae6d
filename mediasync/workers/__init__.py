"""Background worker pool and job persistence."""
