"""Job snapshot data model shared by the lifecycle client and the job service."""

import base64
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JobPhase(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    AWAITING_VERIFICATION = "waiting_captcha"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def is_processing(self) -> bool:
        return self in PROCESSING_PHASES


TERMINAL_PHASES = frozenset({JobPhase.COMPLETED, JobPhase.FAILED})
PROCESSING_PHASES = frozenset({JobPhase.CREATED, JobPhase.RUNNING})

# (field name, wire key) of the payload each phase is allowed to carry
_PHASE_PAYLOAD = {
    JobPhase.COMPLETED: ("result", "result"),
    JobPhase.FAILED: ("error", "error"),
    JobPhase.AWAITING_VERIFICATION: ("verification_challenge", "captcha"),
}


class CaptchaChallenge(BaseModel):
    """Challenge the remote side needs a human to solve before it continues."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(default="", alias="ID")
    image: Optional[str] = Field(default=None, alias="Image")
    content_type: str = Field(default="", alias="ContentType")
    metadata: Optional[Dict[str, str]] = Field(default=None, alias="Metadata")

    def image_bytes(self) -> bytes:
        """Decode the base64 image payload."""
        if not self.image:
            return b""
        return base64.b64decode(self.image)


class JobSnapshot(BaseModel):
    """Complete state of a remote job at one point in time.

    A snapshot is never merged with an earlier one: every status fetch
    produces a new snapshot that replaces the previous one. Only the payload
    that matches ``phase`` is kept (``result`` for completed jobs, ``error``
    for failed jobs, ``verification_challenge`` while waiting for a captcha).
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    phase: JobPhase = Field(alias="status")
    result: Optional[Any] = None
    error: Optional[str] = None
    verification_challenge: Optional[CaptchaChallenge] = Field(
        default=None, alias="captcha"
    )
    access_key: Optional[str] = Field(default=None, alias="accessKey")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    @model_validator(mode="before")
    @classmethod
    def _keep_phase_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw_phase = data.get("status", data.get("phase"))
        try:
            phase = JobPhase(raw_phase)
        except ValueError:
            # let field validation report the bad phase
            return data
        allowed = _PHASE_PAYLOAD.get(phase)
        cleaned = dict(data)
        for field_name, wire_key in _PHASE_PAYLOAD.values():
            if (field_name, wire_key) == allowed:
                continue
            cleaned.pop(field_name, None)
            cleaned.pop(wire_key, None)
        return cleaned

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def is_processing(self) -> bool:
        return self.phase.is_processing

    @property
    def is_awaiting_verification(self) -> bool:
        return self.phase is JobPhase.AWAITING_VERIFICATION

    @property
    def is_completed(self) -> bool:
        return self.phase is JobPhase.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.phase is JobPhase.FAILED


class CreateJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_key: str = Field(alias="accessKey")


class JobHandle(BaseModel):
    """Identifier returned by job creation."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    job_id: str = Field(alias="jobId", min_length=1)


class CaptchaSubmission(BaseModel):
    solution: str
