from .download_engine import DownloadEngine
from .status_service import StatusQueryService
from .storage_service import AvailabilityOracle, S3StorageOracle, MockStorageOracle

__all__ = [
    "DownloadEngine",
    "StatusQueryService",
    "AvailabilityOracle",
    "S3StorageOracle",
    "MockStorageOracle",
]
