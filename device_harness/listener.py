"""TCP result listener and test result summaries."""

import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import ClassVar, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class RunnerResult(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    LAUNCH_FAILURE = "launch_failure"
    CRASHED = "crashed"


class RunnerEnvironment:
    """Environment variables understood by the in-app test runner."""

    AUTO_EXIT: ClassVar[str] = "NUNIT_AUTOEXIT"
    HOST_NAME: ClassVar[str] = "NUNIT_HOSTNAME"
    HOST_PORT: ClassVar[str] = "NUNIT_HOSTPORT"
    ENABLE_XML_OUTPUT: ClassVar[str] = "NUNIT_ENABLE_XML_OUTPUT"
    XML_VERSION: ClassVar[str] = "NUNIT_XML_VERSION"
    RUN_ALL: ClassVar[str] = "NUNIT_RUN_ALL"
    SKIPPED_METHODS: ClassVar[str] = "NUNIT_SKIPPED_METHODS"
    SKIPPED_CLASSES: ClassVar[str] = "NUNIT_SKIPPED_CLASSES"


def runner_environment(
    port: int,
    xml_version: str = "xUnit",
    skipped_methods: Iterable[str] = (),
    skipped_classes: Iterable[str] = (),
) -> Dict[str, str]:
    env = {
        RunnerEnvironment.AUTO_EXIT: "true",
        RunnerEnvironment.HOST_NAME: "127.0.0.1",
        RunnerEnvironment.HOST_PORT: str(port),
        RunnerEnvironment.ENABLE_XML_OUTPUT: "true",
        RunnerEnvironment.XML_VERSION: xml_version,
    }
    methods = ",".join(skipped_methods)
    classes = ",".join(skipped_classes)
    if methods or classes:
        env[RunnerEnvironment.RUN_ALL] = "false"
    if methods:
        env[RunnerEnvironment.SKIPPED_METHODS] = methods
    if classes:
        env[RunnerEnvironment.SKIPPED_CLASSES] = classes
    return env


@dataclass(frozen=True)
class ResultSummary:
    total: int
    failed: int

    @property
    def passed(self) -> int:
        return max(0, self.total - self.failed)

    @property
    def result(self) -> RunnerResult:
        return RunnerResult.FAILED if self.failed else RunnerResult.SUCCEEDED


_TEXT_SUMMARY = re.compile(r"Tests run:\s*(\d+).*?Failed:\s*(\d+)", re.IGNORECASE)


def _int_attr(element: ET.Element, *names: str) -> int:
    return sum(int(element.get(name, "0") or 0) for name in names)


def parse_results(path: Path) -> Optional[ResultSummary]:
    """Read the summary counts of an xUnit, NUnit or JUnit document."""
    path = Path(path)
    if not path.is_file() or path.stat().st_size == 0:
        return None

    try:
        root = ET.parse(path).getroot()
    except ET.ParseError:
        match = _TEXT_SUMMARY.search(path.read_text(encoding="utf-8", errors="replace"))
        if match:
            return ResultSummary(total=int(match.group(1)), failed=int(match.group(2)))
        logger.warning(f"Could not parse test results in {path}")
        return None

    if root.tag == "assemblies":
        assemblies = root.findall("assembly")
        return ResultSummary(
            total=sum(_int_attr(a, "total") for a in assemblies),
            failed=sum(_int_attr(a, "failed", "errors") for a in assemblies),
        )
    if root.tag == "assembly":
        return ResultSummary(total=_int_attr(root, "total"), failed=_int_attr(root, "failed", "errors"))
    if root.tag in ("test-run", "test-results"):
        return ResultSummary(
            total=_int_attr(root, "total"), failed=_int_attr(root, "failed", "errors")
        )
    if root.tag == "testsuites":
        if root.get("tests") is not None:
            return ResultSummary(
                total=_int_attr(root, "tests"), failed=_int_attr(root, "failures", "errors")
            )
        suites = root.findall("testsuite")
        return ResultSummary(
            total=sum(_int_attr(s, "tests") for s in suites),
            failed=sum(_int_attr(s, "failures", "errors") for s in suites),
        )
    if root.tag == "testsuite":
        return ResultSummary(
            total=_int_attr(root, "tests"), failed=_int_attr(root, "failures", "errors")
        )

    logger.warning(f"Unknown result document root '{root.tag}' in {path}")
    return None


class ResultListener:
    """Accepts one connection from the app and stores what it sends.

    `connected` resolves on the first byte received; `finished` resolves
    when the app closes the connection.
    """

    def __init__(self, result_path: Path, host: str = "127.0.0.1") -> None:
        self.result_path = Path(result_path)
        self.host = host
        self.port: Optional[int] = None
        self.bytes_received = 0
        self._server: Optional[asyncio.Server] = None
        self.connected: Optional[asyncio.Future] = None
        self.finished: Optional[asyncio.Future] = None
        self._writers: set = set()

    async def start(self) -> int:
        loop = asyncio.get_running_loop()
        self.connected = loop.create_future()
        self.finished = loop.create_future()
        self.result_path.parent.mkdir(parents=True, exist_ok=True)
        self._server = await asyncio.start_server(self._handle, self.host, 0)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Result listener waiting on {self.host}:{self.port}")
        return self.port

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.finished.done():
            writer.close()
            return
        self._writers.add(writer)
        try:
            with open(self.result_path, "wb") as sink:
                while True:
                    chunk = await reader.read(64 * 1024)
                    if not chunk:
                        break
                    if not self.connected.done():
                        logger.info("Test application connected to the result listener")
                        self.connected.set_result(True)
                    sink.write(chunk)
                    sink.flush()
                    self.bytes_received += len(chunk)
        except ConnectionError as e:
            logger.warning(f"Result connection dropped: {e}")
        finally:
            self._writers.discard(writer)
            writer.close()
            if not self.finished.done():
                self.finished.set_result(self.bytes_received)

    @property
    def is_connected(self) -> bool:
        return (
            self.connected is not None
            and self.connected.done()
            and not self.connected.cancelled()
        )

    async def wait_connected(self) -> bool:
        return await asyncio.shield(self.connected)

    async def wait_finished(self) -> int:
        return await asyncio.shield(self.finished)

    async def close(self) -> None:
        for writer in list(self._writers):
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        for future in (self.connected, self.finished):
            if future is not None and not future.done():
                future.cancel()
