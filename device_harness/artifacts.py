"""Per-run log directory and execution log handler."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

EXECUTION_LOG = "execution.log"
SYSTEM_LOG = "system.log"
DEVICE_LOG = "device.log"
BUGREPORT = "bugreport.zip"
RESULTS_DIR = "results"
LISTENER_RESULTS = "test-results.xml"


class RunLogs:
    """Owns the artifacts directory of one orchestration run."""

    def __init__(self, root: Path, run_name: str, timestamp: Optional[str] = None) -> None:
        stamp = timestamp or datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        self.directory = Path(root) / f"{run_name}-{stamp}"
        self._handler: Optional[logging.FileHandler] = None
        self._previous_level = logging.NOTSET

    @property
    def execution_log(self) -> Path:
        return self.directory / EXECUTION_LOG

    @property
    def system_log(self) -> Path:
        return self.directory / SYSTEM_LOG

    @property
    def device_log(self) -> Path:
        return self.directory / DEVICE_LOG

    @property
    def bugreport(self) -> Path:
        return self.directory / BUGREPORT

    @property
    def results_dir(self) -> Path:
        return self.directory / RESULTS_DIR

    @property
    def listener_results(self) -> Path:
        return self.results_dir / LISTENER_RESULTS

    def attach(self, level: int = logging.INFO) -> Path:
        """Mirror all harness logging into the execution log."""
        self.directory.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(self.execution_log, encoding="utf-8")
        handler.setLevel(level)
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        package_logger = logging.getLogger("device_harness")
        self._previous_level = package_logger.level
        # Records below the logger's level never reach the file handler
        if package_logger.getEffectiveLevel() > level:
            package_logger.setLevel(level)
        package_logger.addHandler(handler)
        self._handler = handler
        return self.execution_log

    def detach(self) -> None:
        if self._handler is None:
            return
        package_logger = logging.getLogger("device_harness")
        package_logger.removeHandler(self._handler)
        package_logger.setLevel(self._previous_level)
        self._handler.close()
        self._handler = None
