"""Pydantic schemas for rules API payloads."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PatientPayload(BaseModel):
    """Patient entry sent to run and rollback endpoints."""

    appointmentid: str = Field(description="Appointment identifier")
    appointmentdate: str = Field(default="", description="MM/DD/YYYY or empty")
    patientid: str = Field(default="", description="Patient identifier")
    firstname: str = Field(default="", description="Patient first name")
    lastname: str = Field(default="", description="Patient last name")
    dob: str = Field(default="", description="Date of birth, MM/DD/YYYY or empty")


class RunRequest(BaseModel):
    """Body of ``POST /rules/run``."""

    project_name: str = Field(min_length=1, description="Run (project) name")
    project_id: str | None = Field(
        default=None, description="Readable sequential project id"
    )
    add_modifiers: bool = Field(default=True, description="Allow modifier edits")
    is_rollback: bool = Field(default=False, description="Always false for runs")
    patients: list[PatientPayload] = Field(min_length=1)
    rules: list[int | str] = Field(min_length=1, description="Rule numbers to run")


class RollbackRequest(BaseModel):
    """Body of ``POST /rules/{rule_id}/rollback``."""

    add_modifiers: bool = Field(default=True)
    is_rollback: bool = Field(default=True)
    patients: list[PatientPayload] = Field(min_length=1)


class SubmitResponse(BaseModel):
    """Immediate response of a non-blocking run submission."""

    model_config = ConfigDict(extra="allow")

    execution_id: int | str | None = Field(default=None)


class RuleProgressPayload(BaseModel):
    """Progress fragment for one rule, keyed ``rule_<n>`` in the response."""

    model_config = ConfigDict(extra="ignore")

    status: str | None = None
    percentage: float | None = None
    patients_processed: int | None = None
    total_patients: int | None = None


class OverallProgressPayload(BaseModel):
    """Aggregate progress block of a progress response."""

    model_config = ConfigDict(extra="ignore")

    percentage: float | None = None
    current_rule: int | str | None = None


class ProgressResponse(BaseModel):
    """Body of ``GET /rules/progress/{execution_id}``."""

    model_config = ConfigDict(extra="allow")

    overall: OverallProgressPayload | None = None
    status: str | None = None

    def rule(self, key: str) -> RuleProgressPayload | None:
        """Return the fragment stored under ``key`` (e.g. ``rule_21``)."""
        raw = (self.model_extra or {}).get(key)
        if not isinstance(raw, dict):
            return None
        return RuleProgressPayload.model_validate(raw)


class ResultsResponse(BaseModel):
    """Body of ``GET /rules/results/{execution_id}`` and run detail."""

    model_config = ConfigDict(extra="allow")

    project_name: str | None = None
    results: list[dict[str, Any]] | None = None
