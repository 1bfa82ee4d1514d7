"""HTTP control server."""
