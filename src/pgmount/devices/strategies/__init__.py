"""Per-platform discovery strategies."""
