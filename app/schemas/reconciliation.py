from enum import Enum
from typing import Optional

from pydantic import BaseModel


class StepStatus(str, Enum):
    DONE = "done"
    SKIPPED = "skipped"    # finished by an earlier run
    PARTIAL = "partial"    # budget ran out mid-sweep
    PENDING = "pending"    # not reached in this run
    FAILED = "failed"


class StepReport(BaseModel):
    step: str
    status: StepStatus
    pages: int = 0
    writes: int = 0
    error: Optional[str] = None


class ReconciliationReport(BaseModel):
    deleted_user_id: str
    status: str  # completed / incomplete / user_exists / failed
    steps: list[StepReport] = []

    @property
    def completed(self) -> bool:
        return self.status == "completed"
