"""source-radar HTTP API."""
