"""Command line interface for proofshot."""
