"""Tests for the TCP result listener and result document parsing."""

import asyncio

import pytest

from device_harness.listener import (
    ResultListener,
    ResultSummary,
    RunnerEnvironment,
    RunnerResult,
    parse_results,
    runner_environment,
)


class TestRunnerEnvironment:
    def test_defaults(self):
        env = runner_environment(5000)

        assert env[RunnerEnvironment.HOST_PORT] == "5000"
        assert env[RunnerEnvironment.HOST_NAME] == "127.0.0.1"
        assert env[RunnerEnvironment.AUTO_EXIT] == "true"
        assert env[RunnerEnvironment.XML_VERSION] == "xUnit"
        assert RunnerEnvironment.RUN_ALL not in env

    def test_skipped_tests_disable_run_all(self):
        env = runner_environment(5000, "NUnitV3", ["A.Test1", "A.Test2"], ["B"])

        assert env[RunnerEnvironment.RUN_ALL] == "false"
        assert env[RunnerEnvironment.SKIPPED_METHODS] == "A.Test1,A.Test2"
        assert env[RunnerEnvironment.SKIPPED_CLASSES] == "B"
        assert env[RunnerEnvironment.XML_VERSION] == "NUnitV3"


class TestParseResults:
    """Summary counts from the formats the in-app runner can emit."""

    def test_xunit(self, temp_dir):
        path = temp_dir / "results.xml"
        path.write_text(
            "<assemblies>"
            '<assembly total="10" failed="1" errors="0" />'
            '<assembly total="5" failed="0" errors="1" />'
            "</assemblies>"
        )

        summary = parse_results(path)

        assert summary == ResultSummary(total=15, failed=2)
        assert summary.passed == 13
        assert summary.result == RunnerResult.FAILED

    def test_nunit3(self, temp_dir):
        path = temp_dir / "results.xml"
        path.write_text('<test-run total="7" passed="7" failed="0" />')

        assert parse_results(path).result == RunnerResult.SUCCEEDED

    def test_junit(self, temp_dir):
        path = temp_dir / "results.xml"
        path.write_text(
            "<testsuites>"
            '<testsuite tests="3" failures="1" errors="0" />'
            '<testsuite tests="2" failures="0" errors="0" />'
            "</testsuites>"
        )

        assert parse_results(path) == ResultSummary(total=5, failed=1)

    def test_plain_text_summary(self, temp_dir):
        path = temp_dir / "results.txt"
        path.write_text("Tests run: 12 Passed: 11 Inconclusive: 0 Failed: 1 Ignored: 0\n")

        assert parse_results(path) == ResultSummary(total=12, failed=1)

    def test_empty_or_missing(self, temp_dir):
        empty = temp_dir / "empty.xml"
        empty.write_text("")

        assert parse_results(empty) is None
        assert parse_results(temp_dir / "missing.xml") is None

    def test_unknown_root(self, temp_dir):
        path = temp_dir / "results.xml"
        path.write_text("<report />")

        assert parse_results(path) is None


class TestResultListener:
    @pytest.mark.asyncio
    async def test_receives_document(self, temp_dir):
        listener = ResultListener(temp_dir / "results" / "test-results.xml")
        port = await listener.start()
        try:
            _, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b'<assemblies><assembly total="1" failed="0" /></assemblies>')
            await writer.drain()
            writer.close()
            await writer.wait_closed()

            assert await asyncio.wait_for(listener.wait_connected(), 5) is True
            received = await asyncio.wait_for(listener.wait_finished(), 5)
        finally:
            await listener.close()

        assert received > 0
        assert listener.is_connected
        assert parse_results(listener.result_path) == ResultSummary(total=1, failed=0)

    @pytest.mark.asyncio
    async def test_close_without_connection(self, temp_dir):
        listener = ResultListener(temp_dir / "test-results.xml")
        await listener.start()

        await listener.close()

        assert not listener.is_connected
        assert listener.bytes_received == 0
