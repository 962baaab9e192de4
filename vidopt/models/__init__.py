"""Data models for vidopt."""

from vidopt.models.app_config import AppConfig
from vidopt.models.job import (
    ConversionProgress,
    ConversionResult,
    ConversionSettings,
    EncodeRequest,
    JobRecord,
    JobStatus,
    MediaInfo,
    MetadataCandidate,
    ProgressEvent,
    ResolvedMetadata,
)

__all__ = [
    "AppConfig",
    "ConversionProgress",
    "ConversionResult",
    "ConversionSettings",
    "EncodeRequest",
    "JobRecord",
    "JobStatus",
    "MediaInfo",
    "MetadataCandidate",
    "ProgressEvent",
    "ResolvedMetadata",
]
