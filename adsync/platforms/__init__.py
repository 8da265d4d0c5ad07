from adsync.platforms.base import (
    AdStatus,
    DeploymentResult,
    NativeStatus,
    Platform,
    PlatformBinding,
    PlatformConnector,
    SyncOperation,
    SyncResult,
    UnifiedAd,
)
from adsync.platforms.dry_run import DryRunConnector
from adsync.platforms.exceptions import ErrorKind, MappingValidationError, PlatformError
from adsync.platforms.factory import get_connector, register_connector

__all__ = [
    "AdStatus",
    "DeploymentResult",
    "DryRunConnector",
    "ErrorKind",
    "MappingValidationError",
    "NativeStatus",
    "Platform",
    "PlatformBinding",
    "PlatformConnector",
    "PlatformError",
    "SyncOperation",
    "SyncResult",
    "UnifiedAd",
    "get_connector",
    "register_connector",
]
