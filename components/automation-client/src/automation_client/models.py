"""Domain models for rule automation runs."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from automation_client.dates import DateLike, normalize_date

_RULE_PREFIX_RE = re.compile(r"^rule[_\s-]?", re.I)
_STATUS_PREFIX_RE = re.compile(r"^status_\d+_")


def normalize_rule_number(value: object) -> str:
    """Return the comparison key for a rule number.

    Examples:
        >>> normalize_rule_number(21)
        '21'
        >>> normalize_rule_number("rule_21")
        '21'
    """
    text = str(value).strip()
    return _RULE_PREFIX_RE.sub("", text).strip().lower()


def _first_present(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_text(value: object) -> str:
    return "" if value is None else str(value)


class RuleStatus(str, Enum):
    """Execution status of one rule inside a backend job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @classmethod
    def from_raw(cls, value: object) -> "RuleStatus":
        """Map a backend status string onto the closed enum.

        Unknown or missing values count as ``pending`` so they never end a run.
        """
        text = str(value or "").strip().lower()
        aliases = {
            "in_progress": cls.RUNNING,
            "in progress": cls.RUNNING,
            "processing": cls.RUNNING,
            "complete": cls.COMPLETED,
            "done": cls.COMPLETED,
            "failed": cls.ERROR,
            "errored": cls.ERROR,
        }
        if text in aliases:
            return aliases[text]
        try:
            return cls(text)
        except ValueError:
            return cls.PENDING

    @property
    def is_terminal(self) -> bool:
        return self in (RuleStatus.COMPLETED, RuleStatus.ERROR)


class OutcomeStatus(str, Enum):
    """Per-rule outcome for one patient in the final results."""

    CHANGES_MADE = "changes_made"
    CONDITION_MET_NO_CHANGE = "condition_met_no_change"
    CONDITION_NOT_MET = "condition_not_met"
    ERROR = "error"
    ROLLED_BACK = "rolled_back"
    UNKNOWN = "unknown"

    @classmethod
    def from_raw(cls, value: object) -> "OutcomeStatus":
        """Normalize the backend's numeric and textual outcome spellings.

        Examples:
            >>> OutcomeStatus.from_raw(1)
            <OutcomeStatus.CHANGES_MADE: 'changes_made'>
            >>> OutcomeStatus.from_raw("Condition Met Made Changes")
            <OutcomeStatus.CHANGES_MADE: 'changes_made'>
        """
        if isinstance(value, OutcomeStatus):
            return value
        if isinstance(value, bool) or value is None:
            return cls.UNKNOWN
        if isinstance(value, int):
            return _OUTCOME_CODES.get(value, cls.UNKNOWN)

        text = str(value).strip().lower()
        if text.isdigit():
            return _OUTCOME_CODES.get(int(text), cls.UNKNOWN)
        text = re.sub(r"[\s\-]+", "_", text)
        text = _STATUS_PREFIX_RE.sub("", text)
        return _OUTCOME_ALIASES.get(text, cls.UNKNOWN)


_OUTCOME_CODES = {
    1: OutcomeStatus.CHANGES_MADE,
    2: OutcomeStatus.CONDITION_MET_NO_CHANGE,
    3: OutcomeStatus.CONDITION_NOT_MET,
    4: OutcomeStatus.ERROR,
}

_OUTCOME_ALIASES = {
    "changes_made": OutcomeStatus.CHANGES_MADE,
    "condition_met_made_changes": OutcomeStatus.CHANGES_MADE,
    "made_changes": OutcomeStatus.CHANGES_MADE,
    "condition_met_no_change": OutcomeStatus.CONDITION_MET_NO_CHANGE,
    "condition_met_no_changes": OutcomeStatus.CONDITION_MET_NO_CHANGE,
    "no_changes": OutcomeStatus.CONDITION_MET_NO_CHANGE,
    "condition_not_met": OutcomeStatus.CONDITION_NOT_MET,
    "not_met": OutcomeStatus.CONDITION_NOT_MET,
    "error": OutcomeStatus.ERROR,
    "errors": OutcomeStatus.ERROR,
    "failed": OutcomeStatus.ERROR,
    "rolled_back": OutcomeStatus.ROLLED_BACK,
    "rollback": OutcomeStatus.ROLLED_BACK,
}


@dataclass(frozen=True)
class PatientRecord:
    """One selected encounter to be processed.

    Args:
        appointment_id: Appointment identifier; unique within a batch.
        appointment_date: Encounter date (date or any parseable string).
        patient_id: Patient identifier.
        first_name: Patient first name, may be empty.
        last_name: Patient last name, may be empty.
        date_of_birth: Optional date of birth.

    Examples:
        >>> PatientRecord.from_mapping(
        ...     {"appointmentid": 501, "appointmentdate": "2025-01-05"}
        ... ).to_payload()["appointmentdate"]
        '01/05/2025'
    """

    appointment_id: str
    appointment_date: DateLike = None
    patient_id: str = ""
    first_name: str = ""
    last_name: str = ""
    date_of_birth: DateLike = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PatientRecord":
        """Build a record from either backend spelling of the patient fields."""
        return cls(
            appointment_id=_as_text(
                _first_present(data, "appointmentid", "appointment_id")
            ),
            appointment_date=_first_present(
                data, "appointmentdate", "appointment_date"
            ),
            patient_id=_as_text(_first_present(data, "patientid", "patient_id")),
            first_name=_as_text(_first_present(data, "firstname", "first_name")),
            last_name=_as_text(_first_present(data, "lastname", "last_name")),
            date_of_birth=_first_present(data, "dob", "date_of_birth"),
        )

    def to_payload(self) -> dict[str, str]:
        """Serialize to the patient shape accepted by run and rollback calls."""
        return {
            "appointmentid": self.appointment_id,
            "appointmentdate": normalize_date(self.appointment_date),
            "patientid": self.patient_id,
            "firstname": self.first_name,
            "lastname": self.last_name,
            "dob": normalize_date(self.date_of_birth),
        }


@dataclass(frozen=True)
class RuleSelection:
    """A rule chosen by the user; ``name`` is display only."""

    rule_number: int | str
    name: str = ""

    @property
    def key(self) -> str:
        return normalize_rule_number(self.rule_number)

    @property
    def progress_key(self) -> str:
        """Key of this rule's fragment in a progress response."""
        return f"rule_{self.key}"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RuleSelection":
        return cls(
            rule_number=data.get("rule_number", ""),
            name=_as_text(data.get("name")),
        )


@dataclass(frozen=True)
class ExecutionHandle:
    """Opaque identifier of one backend execution."""

    execution_id: str
    project_name: str = ""
    project_id: str | None = None


@dataclass(frozen=True)
class RuleProgress:
    """Progress of one rule within an execution."""

    rule_number: int | str
    status: RuleStatus = RuleStatus.PENDING
    percentage: float = 0.0
    patients_processed: int = 0
    total_patients: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def failed(self) -> bool:
        """True when the backend reported this rule as errored."""
        return self.status is RuleStatus.ERROR

    @classmethod
    def pending(cls, rule_number: int | str, total_patients: int) -> "RuleProgress":
        return cls(rule_number=rule_number, total_patients=total_patients)


@dataclass(frozen=True)
class OverallProgress:
    """Aggregate progress across all selected rules; informational only."""

    percentage: float = 0.0
    current_rule: str | None = None


@dataclass(frozen=True)
class ProgressSnapshot:
    """Merged view of one progress poll.

    Args:
        rules: Per-rule progress in selection order.
        overall: Aggregate progress, if the backend reported one.
        status: Top-level execution status.
        sequence: Number of successful polls merged so far.
    """

    rules: tuple[RuleProgress, ...]
    overall: OverallProgress | None = None
    status: RuleStatus = RuleStatus.PENDING
    sequence: int = 0

    @property
    def all_rules_terminal(self) -> bool:
        return all(rule.is_terminal for rule in self.rules)

    @property
    def is_complete(self) -> bool:
        """Every selected rule and the execution itself reached a terminal status."""
        return self.all_rules_terminal and self.status.is_terminal

    def get(self, rule_number: int | str) -> RuleProgress | None:
        key = normalize_rule_number(rule_number)
        for rule in self.rules:
            if normalize_rule_number(rule.rule_number) == key:
                return rule
        return None


@dataclass(frozen=True)
class ResultDetail:
    """Outcome of one rule for one patient."""

    rule_number: str
    status: OutcomeStatus = OutcomeStatus.UNKNOWN
    reason: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ResultDetail":
        return cls(
            rule_number=normalize_rule_number(data.get("rule_number", "")),
            status=OutcomeStatus.from_raw(data.get("status")),
            reason=_as_text(data.get("reason")),
        )

    def to_mapping(self) -> dict[str, str]:
        return {
            "rule_number": self.rule_number,
            "status": self.status.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ResultRecord:
    """One processed patient's merged outcome."""

    appointment_id: str
    appointment_date: str = ""
    patient_id: str = ""
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""
    changes_made: int = 0
    condition_met_no_change: int = 0
    condition_not_met: int = 0
    errors: int = 0
    details: tuple[ResultDetail, ...] = field(default_factory=tuple)

    @property
    def has_changes(self) -> bool:
        return self.changes_made > 0

    def to_patient(self) -> PatientRecord:
        return PatientRecord(
            appointment_id=self.appointment_id,
            appointment_date=self.appointment_date,
            patient_id=self.patient_id,
            first_name=self.first_name,
            last_name=self.last_name,
            date_of_birth=self.date_of_birth,
        )

    def to_fragment(self) -> dict[str, Any]:
        """Serialize back to the backend result shape."""
        return {
            "appointment_id": self.appointment_id,
            "appointment_date": self.appointment_date,
            "patientid": self.patient_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "dob": self.date_of_birth,
            "status_1_changes_made": self.changes_made,
            "status_2_condition_met_no_changes": self.condition_met_no_change,
            "status_3_condition_not_met": self.condition_not_met,
            "status_4_errors": self.errors,
            "details": [detail.to_mapping() for detail in self.details],
        }

    def mark_rolled_back(self) -> "ResultRecord":
        """Return a copy reflecting a completed rollback of every rule."""
        return replace(
            self,
            changes_made=0,
            details=tuple(
                replace(detail, status=OutcomeStatus.ROLLED_BACK, reason="rollback")
                for detail in self.details
            ),
        )


class ExecutionStatus(str, Enum):
    """Final state of an execution as seen by the caller."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one execution, resolved exactly once."""

    status: ExecutionStatus
    results: tuple[ResultRecord, ...] = ()
    snapshot: ProgressSnapshot | None = None
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is ExecutionStatus.COMPLETED


@dataclass(frozen=True)
class RunSummary:
    """One row of the runs list."""

    id: str
    project_name: str = ""
    created_at: str = ""
    status: str = ""
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RunSummary":
        return cls(
            id=_as_text(data.get("id")),
            project_name=_as_text(data.get("project_name")),
            created_at=_as_text(_first_present(data, "created_at", "run_date")),
            status=_as_text(data.get("status")),
            raw=dict(data),
        )


@dataclass(frozen=True)
class RunDetail:
    """A finished run and its reconciled results."""

    project_id: str
    project_name: str
    results: tuple[ResultRecord, ...]

    def find(self, appointment_id: str) -> ResultRecord | None:
        for record in self.results:
            if record.appointment_id == appointment_id:
                return record
        return None


@dataclass(frozen=True)
class Batch:
    """A user's selection, ready for submission."""

    name: str
    patients: Sequence[PatientRecord]
    rules: Sequence[RuleSelection]
    project_id: str | None = None
    add_modifiers: bool = True
