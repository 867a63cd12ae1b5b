"""source-radar configuration."""
