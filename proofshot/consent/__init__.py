"""Consent overlay defenses."""

from .engine import ConsentResilienceEngine, build_suppression_css, should_block_request

__all__ = [
    "ConsentResilienceEngine",
    "build_suppression_css",
    "should_block_request",
]
