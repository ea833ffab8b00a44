"""Custom exception hierarchy for Clarity-Pilot.

Every error raised by the client derives from ``ClarityPilotError`` and
carries a context dict for the JSON log. When a page was open at the time
of failure the error also holds a screenshot path; the CLI prints it with
the error result.

Taxonomy:
    - NotFoundError: expert, profile or required control absent
    - OperationTimeoutError: a bounded navigation/selector wait expired
    - AuthenticationError: bad credentials or unrecognized login form
    - StateViolationError: booking submit without a matching filled form
    - SubmitFailureError: anything went wrong after the submit click
"""

from datetime import UTC, datetime
from typing import Any


class ClarityPilotError(Exception):
    """Base exception for all Clarity-Pilot errors.

    ``ClarityClient`` converts any instance into an ``ErrorResult``.

    Attributes:
        message: Text shown to the user.
        context: Structured fields for the log line.
        screenshot: Path of the screenshot captured at failure time, if any.
        timestamp: When the error was raised (UTC).
        do_not_retry: Whether repeating the operation risks a side effect.
    """

    do_not_retry: bool = False

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        screenshot: str | None = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.screenshot = screenshot
        self.timestamp = datetime.now(UTC)
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if not self.context:
            return self.message
        details = "; ".join(f"{key}={value}" for key, value in self.context.items() if value is not None)
        return f"{self.message} ({details})" if details else self.message


class ConfigValidationError(ClarityPilotError):
    """Raised when a required configuration value is missing or invalid.

    The operation cannot proceed; no browser action is attempted.
    """

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(
            message=f"Invalid setting {field}: {reason}",
            context={"field": field, "reason": reason},
        )


class InvalidInputError(ClarityPilotError):
    """Raised when operation arguments are rejected before any browser work."""

    def __init__(self, argument: str, reason: str) -> None:
        super().__init__(
            message=f"Invalid {argument}: {reason}",
            context={"argument": argument, "reason": reason},
        )


class BrowserInitializationError(ClarityPilotError):
    """Raised when the resident browser fails to launch or accept a connection.

    Common causes include missing Playwright browsers, a port already in
    use, or a profile directory locked by another Chromium process.
    """

    def __init__(self, reason: str, browser_type: str = "chromium") -> None:
        super().__init__(
            message=f"Could not start or attach to {browser_type}: {reason}",
            context={"browser_type": browser_type, "reason": reason},
        )


class NavigationError(ClarityPilotError):
    """Raised when a page load returns an error status or no response."""

    def __init__(self, url: str, reason: str, status_code: int | None = None) -> None:
        super().__init__(
            message=f"Could not load {url}: {reason}",
            context={"url": url, "reason": reason, "status_code": status_code},
        )
        self.status_code = status_code


class OperationTimeoutError(ClarityPilotError):
    """Raised when a bounded wait (navigation or selector) expires."""

    def __init__(self, operation: str, timeout_ms: int, url: str | None = None) -> None:
        super().__init__(
            message=f"Timed out after {timeout_ms}ms while waiting for {operation}",
            context={"operation": operation, "timeout_ms": timeout_ms, "url": url},
        )


class NotFoundError(ClarityPilotError):
    """Base for missing experts, pages and controls."""


class ExpertNotFoundError(NotFoundError):
    """Raised when an expert profile is absent or never renders."""

    def __init__(self, username: str, reason: str, screenshot: str | None = None) -> None:
        super().__init__(
            message=(
                f'Expert "{username}" not found or page failed to load: {reason}. '
                "Verify the username."
            ),
            context={"username": username, "reason": reason},
            screenshot=screenshot,
        )


class ControlNotFoundError(NotFoundError):
    """Raised when no selector in a strategy table matched a usable control.

    Attributes:
        control: Logical name of the control (e.g. "submit button").
        selectors_tried: Number of strategies attempted before giving up.
    """

    def __init__(
        self,
        control: str,
        selectors_tried: int,
        hint: str = "",
        screenshot: str | None = None,
    ) -> None:
        message = f"Could not find {control} after {selectors_tried} selector strategies"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(
            message=message,
            context={"control": control, "selectors_tried": selectors_tried},
            screenshot=screenshot,
        )
        self.control = control
        self.selectors_tried = selectors_tried


class BookingUnavailableError(ControlNotFoundError):
    """Raised when the expert's profile offers no request-a-call control."""

    def __init__(self, username: str, selectors_tried: int, screenshot: str | None = None) -> None:
        super().__init__(
            control="booking button",
            selectors_tried=selectors_tried,
            hint=f'Expert "{username}" may not accept calls',
            screenshot=screenshot,
        )
        self.context["username"] = username


class AuthenticationError(ClarityPilotError):
    """Raised when the login flow cannot reach an authenticated state."""

    def __init__(self, reason: str, screenshot: str | None = None) -> None:
        super().__init__(
            message=f"Login failed: {reason}",
            context={"reason": reason},
            screenshot=screenshot,
        )


class StateViolationError(ClarityPilotError):
    """Raised when a booking step is invoked outside its required state.

    Raised before any browser interaction takes place.
    """

    def __init__(self, reason: str, expected: str, actual: str | None = None) -> None:
        super().__init__(
            message=reason,
            context={"expected_state": expected, "actual_state": actual},
        )


class SubmitFailureError(ClarityPilotError):
    """Raised for any failure after the booking submit control was clicked.

    This is always terminal: the click may already have created a booking
    or a charge, so the operation must not be repeated automatically.
    """

    do_not_retry = True

    def __init__(self, reason: str, expert: str | None, screenshot: str | None = None) -> None:
        super().__init__(
            message=f"Submit failed: {reason}. DO NOT retry - risk of double charge.",
            context={"expert": expert, "reason": reason},
            screenshot=screenshot,
        )


class SessionExpiredError(ClarityPilotError):
    """Raised when there is no live browser context to read session storage from."""

    def __init__(self, state_path: str) -> None:
        super().__init__(
            message=f"No browser context to save session storage to {state_path}",
            context={"state_path": state_path},
        )


class ReportGenerationError(ClarityPilotError):
    """Raised when a shortlist export cannot be written."""

    def __init__(self, report_type: str, reason: str, output_path: str | None = None) -> None:
        super().__init__(
            message=f"Could not write {report_type} export: {reason}",
            context={"report_type": report_type, "reason": reason, "output_path": output_path},
        )


class LoggingInitializationError(ClarityPilotError):
    """Raised at startup when the log directory cannot be written."""

    def __init__(self, log_dir: str, reason: str) -> None:
        super().__init__(
            message=f"Log directory {log_dir} is not writable: {reason}",
            context={"log_dir": log_dir, "reason": reason},
        )
