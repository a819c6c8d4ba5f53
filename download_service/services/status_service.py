# download_service/services/status_service.py

from typing import Union

from download_service.core.jobs import JobStore
from download_service.core.logging import LoggerMixin
from download_service.schemas.job import JobRecord, MissingJob


class StatusQueryService(LoggerMixin):
    """Read-only view of the job store. Absence is a status, not an error."""

    def __init__(self, store: JobStore):
        self.store = store

    def get(self, file_id: int) -> Union[JobRecord, MissingJob]:
        record = self.store.get(file_id)
        if record is None:
            self.logger.debug("No job recorded", file_id=file_id)
            return MissingJob(file_id=file_id)
        return record
