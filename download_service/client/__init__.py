from .api import DownloadApiClient
from .state import ClientJob, Confirmed, Optimistic
from .tracker import JobTracker

__all__ = [
    "DownloadApiClient",
    "ClientJob",
    "Confirmed",
    "Optimistic",
    "JobTracker",
]
