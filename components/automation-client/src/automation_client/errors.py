"""Exception hierarchy for the automation client."""

from __future__ import annotations


class AutomationError(Exception):
    """Base exception for everything raised by the automation client."""


class AutomationApiError(AutomationError):
    """Base exception for all automation API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        """Initialize automation API error.

        Args:
            message: Error message.
            status_code: HTTP status code if applicable.
            response_body: Response body if applicable.
        """
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(self.message)


class AutomationApiTimeoutError(AutomationApiError):
    """Request timeout errors."""

    pass


class AutomationApiServerError(AutomationApiError):
    """5xx errors: server-side issues, retried for idempotent reads."""

    pass


class AutomationApiClientError(AutomationApiError):
    """4xx errors: client configuration or request issues."""

    pass


class AutomationApiAuthenticationError(AutomationApiClientError):
    """401/403: authentication or authorization failures."""

    pass


class SessionExpiredError(AutomationApiAuthenticationError):
    """The access token expired and could not be refreshed."""

    pass


class AutomationApiNotFoundError(AutomationApiClientError):
    """404: the requested resource does not exist."""

    pass


class RunNotFoundError(AutomationApiNotFoundError):
    """A run (project) id is unknown to the backend."""

    pass


class AutomationApiRateLimitError(AutomationApiClientError):
    """429: rate limit exceeded."""

    pass


class SubmissionError(AutomationError):
    """A batch could not be handed to the rules engine.

    Never retried automatically: resubmitting could process patients twice.
    """


class SubmissionFailedError(SubmissionError):
    """Network, timeout or HTTP failure while submitting a batch."""

    def __init__(self, message: str, cause: AutomationApiError | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class MissingExecutionIdError(SubmissionError):
    """The backend accepted the batch but returned no execution id."""

    def __init__(self, response: object) -> None:
        self.response = response
        super().__init__(
            "Failed to start execution: backend response had no execution_id"
        )


class RollbackError(AutomationError):
    """One or more rule rollbacks failed for a patient."""

    def __init__(self, appointment_id: str, failed_rules: dict[str, str]) -> None:
        self.appointment_id = appointment_id
        self.failed_rules = failed_rules
        rules = ", ".join(sorted(failed_rules))
        super().__init__(
            f"Failed to rollback rules [{rules}] for appointment {appointment_id}"
        )
