"""Detection of the app's exit code from a captured system log."""

import re
from pathlib import Path
from typing import Optional, Union

ABNORMAL_EXIT_PHRASE = "Service exited with abnormal code"

_TRAILING_CODE = re.compile(r" (-?[0-9]+)$")


class ExitCodeDetector:
    """Finds the last-word exit code on the app's abnormal-exit line."""

    def is_exit_line(self, line: str, app_identity: str) -> bool:
        return app_identity in line and ABNORMAL_EXIT_PHRASE in line

    def detect(self, app_identity: str, system_log: Union[str, Path]) -> Optional[int]:
        path = Path(system_log)
        if not path.is_file():
            return None

        with open(path, "r", encoding="utf-8", errors="replace") as reader:
            for line in reader:
                line = line.rstrip("\r\n")
                if not self.is_exit_line(line, app_identity):
                    continue
                match = _TRAILING_CODE.search(line)
                if match:
                    return int(match.group(1))
        return None


class UIKitExitCodeDetector(ExitCodeDetector):
    """iOS/tvOS simulators log the exit under the UIKitApplication launchd label."""

    def is_exit_line(self, line: str, app_identity: str) -> bool:
        return "UIKitApplication:" in line and super().is_exit_line(line, app_identity)


class MacCatalystExitCodeDetector(ExitCodeDetector):
    """Catalyst apps are labelled ``application.<bundle id>...`` by launchd."""

    def is_exit_line(self, line: str, app_identity: str) -> bool:
        return (
            f"[{app_identity}" in line
            or f"application.{app_identity}" in line
            or f"({app_identity}" in line
        ) and ABNORMAL_EXIT_PHRASE in line


DETECTORS = {
    "generic": ExitCodeDetector,
    "uikit": UIKitExitCodeDetector,
    "catalyst": MacCatalystExitCodeDetector,
}


def detector_for(os_name: str) -> ExitCodeDetector:
    """Pick the detector matching how a simulator OS labels the app's process."""
    style = "uikit" if os_name in ("iOS", "tvOS") else "generic"
    return DETECTORS[style]()
