"""Tests for script execution."""

import time

import pytest

from script_exporter import (
    CollectionResult, ScriptExecutionError, ScriptRunner, ScriptTimeoutError
)

# Fixtures imported from conftest.py: make_config, write_script, logger


class TestScriptRunner:
    """Running a single script and reading its output."""

    @pytest.mark.asyncio
    async def test_clean_script(self, config, write_script, logger):
        """Non-empty lines are kept verbatim and in order."""
        script = write_script("clean.sh", "\n".join([
            "echo 'metric_a 1'",
            "echo",
            "echo 'metric_b{label=\"x\"} 2.5'",
            "echo ''",
        ]))

        result = await ScriptRunner(config, logger).run(script)

        assert result == CollectionResult(
            metric_lines=("metric_a 1", 'metric_b{label="x"} 2.5'),
            exit_status=0,
            access_failed=False,
            parse_failed=False,
        )

    @pytest.mark.asyncio
    async def test_nonzero_exit_recorded(self, config, write_script, logger):
        script = write_script("fail.sh", "echo 'partial 1'\necho oops >&2\nexit 7")

        result = await ScriptRunner(config, logger).run(script)

        assert result.exit_status == 7
        assert result.metric_lines == ("partial 1",)
        assert not result.parse_failed

    @pytest.mark.asyncio
    async def test_carriage_returns_stripped(self, config, write_script, logger):
        script = write_script("crlf.sh", r"printf 'm 1\r\n\r\nn 2\n'")

        result = await ScriptRunner(config, logger).run(script)

        assert result.metric_lines == ("m 1", "n 2")

    @pytest.mark.asyncio
    async def test_last_line_without_newline(self, config, write_script, logger):
        script = write_script("tail.sh", "printf 'a 1\\nb 2'")

        result = await ScriptRunner(config, logger).run(script)

        assert result.metric_lines == ("a 1", "b 2")

    @pytest.mark.asyncio
    async def test_stderr_not_captured_as_metrics(self, config, write_script, logger):
        script = write_script("noisy.sh", "echo 'warning' >&2\necho 'm 1'")

        result = await ScriptRunner(config, logger).run(script)

        assert result.metric_lines == ("m 1",)

    @pytest.mark.asyncio
    async def test_timeout_kills_script(self, make_config, write_script, logger):
        """A script past its timeout is killed and raises."""
        config = make_config(collection={"timeout_sec": 0.5})
        script = write_script("slow.sh", "echo 'early 1'\nsleep 30\necho 'late 1'")

        start = time.monotonic()
        with pytest.raises(ScriptTimeoutError):
            await ScriptRunner(config, logger).run(script)

        assert time.monotonic() - start < 10

    @pytest.mark.asyncio
    async def test_killed_by_signal(self, config, write_script, logger):
        script = write_script("suicide.sh", "echo 'm 1'\nkill -9 $$")

        with pytest.raises(ScriptExecutionError, match="SIGKILL"):
            await ScriptRunner(config, logger).run(script)

    @pytest.mark.asyncio
    async def test_interpreter_missing(self, make_config, write_script, logger):
        config = make_config(scripts={"interpreter": "/nonexistent/interpreter"})
        script = write_script("any.sh", "echo 'm 1'")

        with pytest.raises(ScriptExecutionError):
            await ScriptRunner(config, logger).run(script)

    @pytest.mark.asyncio
    async def test_overlong_line_sets_parse_flag(self, make_config, write_script, logger):
        """Lines before the overlong one are kept, the rest is dropped."""
        config = make_config(scripts={"max_line_bytes": 64})
        script = write_script("long.sh", "\n".join([
            "echo 'first 1'",
            "head -c 500 /dev/zero | tr '\\0' 'x'",
            "echo",
            "echo 'after 1'",
        ]))

        result = await ScriptRunner(config, logger).run(script)

        assert result.parse_failed
        assert result.metric_lines == ("first 1",)
        assert result.exit_status == 0

    @pytest.mark.asyncio
    async def test_non_utf8_lines_passed_through(self, config, write_script, logger):
        """Latin-1 output is kept byte for byte along with the lines after it."""
        script = write_script(
            "latin1.sh", r"""printf 'a 1\nhost_info{name="caf\xe9"} 1\nb 2\nc 3\n'"""
        )

        result = await ScriptRunner(config, logger).run(script)

        assert not result.parse_failed
        assert len(result.metric_lines) == 4
        assert result.metric_lines[0] == "a 1"
        assert result.metric_lines[1].encode("utf-8", "surrogateescape") == b'host_info{name="caf\xe9"} 1'
        assert result.metric_lines[2:] == ("b 2", "c 3")

    @pytest.mark.asyncio
    async def test_runs_are_isolated(self, config, write_script, logger):
        """The same runner gives independent results for each script."""
        runner = ScriptRunner(config, logger)
        first = write_script("first.sh", "echo 'one 1'\nexit 3")
        second = write_script("second.sh", "echo 'two 2'")

        result_one = await runner.run(first)
        result_two = await runner.run(second)

        assert result_one.exit_status == 3
        assert result_two == CollectionResult(metric_lines=("two 2",))
