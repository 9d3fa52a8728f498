"""HTTP API for SiteLedger."""
