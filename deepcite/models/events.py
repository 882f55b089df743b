from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    JOB_STARTED = "job_started"
    STATE_CHANGED = "state_changed"
    PLAN_CREATED = "plan_created"
    SEARCH_COMPLETED = "search_completed"
    SOURCE_ACQUIRED = "source_acquired"
    PROGRESS = "progress"
    DRAFT_COMPLETED = "draft_completed"
    JOB_PAUSED = "job_paused"
    JOB_CANCELLED = "job_cancelled"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    ERROR = "error"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data, default=str)}\n\n"
