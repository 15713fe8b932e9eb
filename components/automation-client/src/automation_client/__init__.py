"""automation-client package."""

from automation_client.api_client import AutomationApiClient
from automation_client.automation import AutomationRunner
from automation_client.config import AddModifiersPolicy, AutomationConfig
from automation_client.errors import (
    AutomationApiError,
    AutomationError,
    MissingExecutionIdError,
    RollbackError,
    RunNotFoundError,
    SessionExpiredError,
    SubmissionError,
    SubmissionFailedError,
)
from automation_client.models import (
    Batch,
    ExecutionHandle,
    ExecutionOutcome,
    ExecutionStatus,
    OutcomeStatus,
    PatientRecord,
    ProgressSnapshot,
    ResultRecord,
    RuleSelection,
    RuleStatus,
)
from automation_client.poller import PollerState, ProgressPoller
from automation_client.reconciler import reconcile
from automation_client.rollback import RollbackClient
from automation_client.runs import CatalogClient, RunsClient
from automation_client.submission import JobSubmissionClient

__all__ = [
    "AddModifiersPolicy",
    "AutomationApiClient",
    "AutomationApiError",
    "AutomationConfig",
    "AutomationError",
    "AutomationRunner",
    "Batch",
    "CatalogClient",
    "ExecutionHandle",
    "ExecutionOutcome",
    "ExecutionStatus",
    "JobSubmissionClient",
    "MissingExecutionIdError",
    "OutcomeStatus",
    "PatientRecord",
    "PollerState",
    "ProgressPoller",
    "ProgressSnapshot",
    "ResultRecord",
    "RollbackClient",
    "RollbackError",
    "RuleSelection",
    "RuleStatus",
    "RunNotFoundError",
    "RunsClient",
    "SessionExpiredError",
    "SubmissionError",
    "SubmissionFailedError",
    "reconcile",
]
