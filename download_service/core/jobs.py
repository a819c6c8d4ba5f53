from typing import Any, Dict, List, Optional

from download_service.schemas.job import JobRecord, JobStatus


class JobStore:
    """
    In-process job records keyed by file id.

    Only the newest job per file id is kept: ``create`` and ``put`` replace
    whatever was stored before, no history is retained. All access happens
    on the event loop thread, so there is no locking; two concurrent jobs for
    the same file id race and the last write wins.
    """

    def __init__(self) -> None:
        self._store: Dict[int, JobRecord] = {}

    def create(self, file_id: int, job_id: str) -> JobRecord:
        """Insert a fresh pending record, superseding any previous job."""
        record = JobRecord(job_id=job_id, file_id=file_id, status=JobStatus.PENDING)
        self._store[file_id] = record
        return record

    def get(self, file_id: int) -> Optional[JobRecord]:
        # records are frozen, handing them out is safe
        return self._store.get(file_id)

    def get_listing(self) -> List[JobRecord]:
        return list(self._store.values())

    def update(self, file_id: int, job_id: str, **patch: Any) -> Optional[JobRecord]:
        """
        Patch the stored record if it still belongs to ``job_id`` and is not
        terminal. Returns the new record, or None when nothing was changed.
        """
        current = self._store.get(file_id)
        if current is None or current.job_id != job_id or current.is_terminal:
            return None
        updated = current.model_copy(update=patch)
        self._store[file_id] = updated
        return updated

    def put(self, record: JobRecord) -> None:
        """Unconditionally store ``record`` as the newest state for its file id."""
        self._store[record.file_id] = record

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)
