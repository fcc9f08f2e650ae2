"""Exit codes, harness errors and response formatting."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, List, Optional

from .models import CommandResult


class ExitCode(IntEnum):
    """Process exit codes reported for every terminal outcome."""

    SUCCESS = 0
    TESTS_FAILED = 1
    HELP_SHOWN = 2
    INVALID_ARGUMENTS = 3
    PACKAGE_NOT_FOUND = 4

    TIMED_OUT = 70
    GENERAL_FAILURE = 71
    PACKAGE_INSTALLATION_FAILURE = 78
    FAILED_TO_GET_BUNDLE_INFO = 79
    APP_CRASH = 80
    DEVICE_NOT_FOUND = 81
    RETURN_CODE_NOT_SET = 82
    APP_LAUNCH_FAILURE = 83
    DEVICE_FILE_COPY_FAILURE = 84
    ADB_DEVICE_ENUMERATION_FAILURE = 85
    PACKAGE_INSTALLATION_TIMEOUT = 86
    SIMULATOR_FAILURE = 88
    DEVICE_FAILURE = 89
    APP_LAUNCH_TIMEOUT = 90
    APP_NOT_SIGNED = 91
    TCP_CONNECTION_FAILED = 92


DEFAULT_FAILURE_MESSAGE = "Check logs for more information"


@dataclass
class ErrorDetails:
    """Detailed error information structure."""

    code: ExitCode
    message: str
    context: Dict[str, Any]
    timestamp: datetime
    severity: str  # 'low', 'medium', 'high', 'critical'
    recovery_suggestion: Optional[str] = None


class HarnessError(Exception):
    """Base exception for faults the harness cannot express as an outcome."""

    def __init__(
        self,
        exit_code: ExitCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recovery_suggestions: Optional[List[str]] = None,
    ):
        self.exit_code = exit_code
        self.message = message
        self.details = details or {}
        self.recovery_suggestions = recovery_suggestions or []
        self.timestamp = datetime.utcnow()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "exit_code": int(self.exit_code),
            "exit_code_name": self.exit_code.name,
            "message": self.message,
            "details": self.details,
            "recovery_suggestions": self.recovery_suggestions,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return f"[{self.exit_code.name}] {self.message}"


class ToolNotFoundError(HarnessError):
    """The external tool binary could not be located or started."""

    def __init__(self, tool: str, reason: str = ""):
        message = f"Could not start '{tool}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            ExitCode.GENERAL_FAILURE,
            message,
            details={"tool": tool},
            recovery_suggestions=[
                f"Install '{tool}' or put it on PATH",
                "Point ADB_EXE_PATH / MLAUNCH_PATH at the executable",
            ],
        )
        self.tool = tool


class AdbFailureError(HarnessError):
    """A device bridge command that must succeed did not."""

    def __init__(self, message: str, result: Optional[CommandResult] = None):
        details: Dict[str, Any] = {}
        if result is not None:
            details = {
                "command": result.command,
                "exit_code": result.exit_code,
                "stderr": result.stderr.strip(),
            }
        super().__init__(ExitCode.GENERAL_FAILURE, message, details=details)
        self.result = result


class ErrorHandler:
    """Centralized error logging and response formatting."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._error_history: List[ErrorDetails] = []
        self.error_counts: Dict[ExitCode, int] = {}

    def handle_error(
        self, error: HarnessError, context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Log a HarnessError, remember it and return a formatted response."""
        self.error_counts[error.exit_code] = self.error_counts.get(error.exit_code, 0) + 1

        error_details = ErrorDetails(
            code=error.exit_code,
            message=error.message,
            context=dict(error.details),
            timestamp=error.timestamp,
            severity="medium",
        )
        if context:
            error_details.context.update(context)

        self._log_error(error_details)
        self._error_history.append(error_details)

        return format_error_response(error, context=context)

    def handle_exception(self, exception: Exception, operation: str) -> Dict[str, Any]:
        """Convert a generic exception to HarnessError and handle it."""
        if isinstance(exception, HarnessError):
            return self.handle_error(exception, context={"operation": operation})

        if isinstance(exception, TimeoutError):
            exit_code = ExitCode.TIMED_OUT
            message = f"Operation '{operation}' timeout: {exception}"
        else:
            exit_code = ExitCode.GENERAL_FAILURE
            message = f"Operation '{operation}' failed: {exception}"

        harness_error = HarnessError(
            exit_code=exit_code,
            message=message,
            details={
                "operation": operation,
                "exception_type": type(exception).__name__,
                "exception_message": str(exception),
            },
        )
        return self.handle_error(harness_error, context={"operation": operation})

    def get_error_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent error history."""
        return [asdict(error) for error in self._error_history[-limit:]]

    def clear_error_history(self):
        self._error_history.clear()
        self.error_counts.clear()

    def _log_error(self, error_details: ErrorDetails):
        log_level_map = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL,
        }
        level = log_level_map.get(error_details.severity, logging.ERROR)

        log_message = f"[{error_details.code.name}] {error_details.message}"
        if error_details.context:
            log_message += f" | Context: {error_details.context}"

        self.logger.log(level, log_message)


# Recovery patterns and suggestions
RECOVERY_SUGGESTIONS = {
    ExitCode.DEVICE_NOT_FOUND: [
        "Check the device or simulator is attached and booted",
        "Verify the requested device name, OS version and architecture",
        "Run 'adb devices -l' or 'xcrun simctl list devices' to list targets",
    ],
    ExitCode.ADB_DEVICE_ENUMERATION_FAILURE: [
        "Restart ADB daemon: 'adb kill-server && adb start-server'",
        "Reconnect the device",
        "Check device authorization dialog",
    ],
    ExitCode.PACKAGE_INSTALLATION_FAILURE: [
        "Check device storage space",
        "Verify the package matches the device architecture",
        "Verify the package signature and provisioning profile",
    ],
    ExitCode.PACKAGE_INSTALLATION_TIMEOUT: [
        "Increase the timeout",
        "Reboot the device if it appears frozen",
    ],
    ExitCode.APP_LAUNCH_FAILURE: [
        "Check the application starts manually on the target",
        "Inspect the captured system log for launch errors",
    ],
    ExitCode.APP_LAUNCH_TIMEOUT: [
        "Increase the launch timeout",
        "Check the application reaches the test runner entry point",
    ],
    ExitCode.TIMED_OUT: [
        "Increase the timeout",
        "Check the application is not waiting for input",
    ],
    ExitCode.APP_CRASH: [
        "Inspect the captured system log and bug report",
    ],
    ExitCode.SIMULATOR_FAILURE: [
        "Reset the simulator with 'reset-simulator'",
        "Shut down all simulators and retry",
    ],
    ExitCode.DEVICE_FAILURE: [
        "Unlock the device and finish any setup assistant",
        "Reconnect the device",
    ],
    ExitCode.APP_NOT_SIGNED: [
        "Sign the application with a valid provisioning profile",
    ],
}


def get_recovery_suggestions(
    exit_code: ExitCode, context: Optional[Dict[str, Any]] = None
) -> List[str]:
    """Get recovery suggestions for specific exit codes."""
    base_suggestions = RECOVERY_SUGGESTIONS.get(
        exit_code,
        [
            "Check the execution log in the run's log directory",
            "Restart the operation",
        ],
    )

    if context:
        contextual_suggestions = []
        if "timeout" in context:
            contextual_suggestions.append("Increase timeout value")
        if "storage" in str(context).lower():
            contextual_suggestions.append("Free up device storage space")
        if contextual_suggestions:
            return contextual_suggestions + base_suggestions

    return base_suggestions


def format_error_response(
    error: HarnessError, context: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Format a HarnessError into a standardized response."""
    recovery_suggestions = error.recovery_suggestions or get_recovery_suggestions(
        error.exit_code, context=context
    )

    response: Dict[str, Any] = {
        "success": False,
        "exit_code": int(error.exit_code),
        "exit_code_name": error.exit_code.name,
        "error": error.message,
        "timestamp": error.timestamp.isoformat(),
        "recovery_suggestions": recovery_suggestions,
    }

    if error.details:
        response["details"] = error.details

    if context:
        response["context"] = context

    return response


# Global error handler instance
error_handler = ErrorHandler()
