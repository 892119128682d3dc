from __future__ import annotations

from typing import Dict

from app.models.domain import JobResult


class JobResultStore:
    """Process-lifetime table of terminal generation results.

    Each job id has exactly one writer (its poll/collect task). Reads are
    destructive: a result is handed out once and then forgotten.
    """

    def __init__(self) -> None:
        self._results: Dict[str, JobResult] = {}

    def put(self, job_id: str, result: JobResult) -> JobResult:
        self._results[job_id] = result
        return result

    def take_if_present(self, job_id: str) -> JobResult | None:
        return self._results.pop(job_id, None)
