"""HTTP server wiring."""
