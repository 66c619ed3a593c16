"""Capture data models package."""

from .capture import (
    StrategyTag,
    FailureKind,
    LayerStatus,
    CaptureMode,
    CaptureRequest,
    BoundingBox,
    Dimensions,
    LayerOutcome,
    ConsentDefenseStats,
    LocatedElement,
    CaptureMetadata,
    CaptureFailure,
    CaptureResult,
    RetryPolicy,
    BatchJob,
)

__all__ = [
    # Enums
    'StrategyTag',
    'FailureKind',
    'LayerStatus',
    'CaptureMode',

    # Request / result models
    'CaptureRequest',
    'BoundingBox',
    'Dimensions',
    'LayerOutcome',
    'ConsentDefenseStats',
    'LocatedElement',
    'CaptureMetadata',
    'CaptureFailure',
    'CaptureResult',

    # Batch models
    'RetryPolicy',
    'BatchJob',
]
