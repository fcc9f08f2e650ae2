"""Known-failure lookup over install, run and test logs."""

import logging
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .error_handler import ExitCode
from .models import KnownFailure

logger = logging.getLogger(__name__)


class LogStage(Enum):
    INSTALL = "install"
    RUN = "run"
    TEST = "test"


def _failure(
    pattern: str,
    message: str,
    exit_code: Optional[ExitCode] = None,
    link: Optional[str] = None,
) -> KnownFailure:
    return KnownFailure(
        pattern=pattern,
        human_message=message,
        issue_link=link,
        suggested_exit_code=int(exit_code) if exit_code is not None else None,
    )


_DEVICE_FAILURES: Tuple[KnownFailure, ...] = (
    _failure(
        "Failed to communicate with the device",
        "Failed to communicate with the device. Please try again.",
        ExitCode.DEVICE_FAILURE,
    ),
    _failure(
        "MT1031",
        "Cannot launch the application because the device is locked. "
        "Please unlock the device and try again.",
        ExitCode.DEVICE_FAILURE,
    ),
    _failure(
        "the device is locked",
        "Cannot launch the application because the device is locked. "
        "Please unlock the device and try again.",
        ExitCode.DEVICE_FAILURE,
    ),
    _failure(
        "while Setup Assistant is running",
        "Cannot launch the application because the device's update hasn't been finished. "
        "The setup assistant is still running. Please finish the device OS update.",
        ExitCode.DEVICE_FAILURE,
    ),
)

_LAUNCH_FAILURES: Tuple[KnownFailure, ...] = (
    _failure(
        "LSOpenURLsWithRole() failed with error -10825",
        "This application requires a newer version of MacOS",
        ExitCode.GENERAL_FAILURE,
    ),
    _failure(
        "Failed to start launchd_sim: could not bind to session",
        "Failed to launch the Simulator as the user session is not ready",
        ExitCode.APP_LAUNCH_FAILURE,
    ),
    _failure(
        "error HE0018: Could not launch the simulator application",
        "Failed to launch the Simulator application",
        ExitCode.SIMULATOR_FAILURE,
    ),
    _failure(
        "error HE0042: Could not launch the app",
        "Failed to launch the application. Please try again.",
        ExitCode.APP_LAUNCH_FAILURE,
    ),
    _failure(
        "[TCP tunnel] Xamarin.Hosting: Failed to connect to port",
        "Failed to connect to the test runner over the TCP tunnel",
        ExitCode.TCP_CONNECTION_FAILED,
    ),
)

TEST_ERRORS: Tuple[KnownFailure, ...] = _DEVICE_FAILURES + _LAUNCH_FAILURES

RUN_ERRORS: Tuple[KnownFailure, ...] = (
    _DEVICE_FAILURES
    + _LAUNCH_FAILURES
    + (
        _failure(
            "Process crashed",
            "The application process crashed. See the device log and bug report.",
            ExitCode.APP_CRASH,
        ),
    )
)

INSTALL_ERRORS: Tuple[KnownFailure, ...] = (
    _failure(
        "IncorrectArchitecture",
        "IncorrectArchitecture: Failed to find matching device arch for the application",
    ),
    _failure(
        "0xe8008015",
        "No valid provisioning profile found",
        ExitCode.APP_NOT_SIGNED,
    ),
    _failure(
        "valid provisioning profile for this executable was not found",
        "No valid provisioning profile found",
        ExitCode.APP_NOT_SIGNED,
    ),
    _failure(
        "0xe800801c",
        "App is not signed",
        ExitCode.APP_NOT_SIGNED,
    ),
    _failure(
        "No code signature found",
        "App is not signed",
        ExitCode.APP_NOT_SIGNED,
    ),
    _failure(
        "INSTALL_FAILED_INSUFFICIENT_STORAGE",
        "Not enough storage on the device to install the application",
    ),
    _failure(
        "INSTALL_FAILED_NO_MATCHING_ABIS",
        "The package does not contain native code for the device architecture",
    ),
    _failure(
        "INSTALL_PARSE_FAILED_NO_CERTIFICATES",
        "App is not signed",
        ExitCode.APP_NOT_SIGNED,
    ),
    _failure(
        "INSTALL_FAILED_UPDATE_INCOMPATIBLE",
        "A version of the package signed with a different key is already installed",
    ),
)


class ErrorKnowledgeBase:
    """Maps log substrings to human-readable causes.

    Each stage has its own ordered map. A log is scanned once from the top;
    the first line containing any pattern (case-insensitive) decides the
    result.
    """

    def __init__(
        self, maps: Optional[Dict[LogStage, Tuple[KnownFailure, ...]]] = None
    ) -> None:
        self.maps = maps or {
            LogStage.INSTALL: INSTALL_ERRORS,
            LogStage.RUN: RUN_ERRORS,
            LogStage.TEST: TEST_ERRORS,
        }

    def classify(
        self, log: Union[str, Path, None], stage: LogStage
    ) -> Optional[KnownFailure]:
        if log is None:
            return None
        path = Path(log)
        if not path.is_file():
            return None

        failures = [(f.pattern.lower(), f) for f in self.maps.get(stage, ())]
        with open(path, "r", encoding="utf-8", errors="replace") as reader:
            for line in reader:
                lowered = line.lower()
                for pattern, failure in failures:
                    if pattern in lowered:
                        logger.debug(f"Known {stage.value} issue matched: {failure.pattern}")
                        return failure
        return None

    def classify_text(self, text: str, stage: LogStage) -> Optional[KnownFailure]:
        failures = [(f.pattern.lower(), f) for f in self.maps.get(stage, ())]
        for line in text.splitlines():
            lowered = line.lower()
            for pattern, failure in failures:
                if pattern in lowered:
                    return failure
        return None

    def is_known_install_issue(self, log) -> Optional[KnownFailure]:
        return self.classify(log, LogStage.INSTALL)

    def is_known_run_issue(self, log) -> Optional[KnownFailure]:
        return self.classify(log, LogStage.RUN)

    def is_known_test_issue(self, log) -> Optional[KnownFailure]:
        return self.classify(log, LogStage.TEST)
