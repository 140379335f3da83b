"""Per-agent resource tracking."""
