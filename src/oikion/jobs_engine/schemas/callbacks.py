"""
Worker callback envelope.

Containers report back with
``{event, jobId, timestamp, data: {progress?, message?, result?, errorMessage?}}``.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CallbackEvent(str, enum.Enum):
    STARTED = "job.started"
    PROGRESS = "job.progress"
    COMPLETED = "job.completed"
    FAILED = "job.failed"


class CallbackData(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    progress: Optional[float] = Field(default=None, allow_inf_nan=False)
    message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class CallbackEnvelope(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event: CallbackEvent
    job_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    data: CallbackData = Field(default_factory=CallbackData)
