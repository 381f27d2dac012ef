"""Tests for run_process against real local processes."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pls_process import TIMEOUT_EXIT_CODE, run_process


class TestRunProcess:
    @pytest.mark.asyncio
    async def test_stdout_and_exit_code(self):
        result = await run_process(["bash", "-c", "echo hello; exit 3"], timeout=10)
        assert result.exit_code == 3
        assert result.stdout == "hello\n"
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_stderr_separate(self):
        result = await run_process(["bash", "-c", "echo oops >&2"], timeout=10)
        assert result.exit_code == 0
        assert result.stdout == ""
        assert result.stderr == "oops\n"
        assert result.output == "oops\n"

    @pytest.mark.asyncio
    async def test_stdin(self):
        result = await run_process(["cat"], timeout=10, stdin_data="piped input")
        assert result.stdout == "piped input"

    @pytest.mark.asyncio
    async def test_timeout(self):
        result = await run_process(["bash", "-c", "echo started; sleep 30"], timeout=0.5)
        assert result.timed_out
        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert "[timeout after 0.5s]" in result.stderr
        assert result.duration < 10

    @pytest.mark.asyncio
    async def test_streaming_observer(self):
        chunks = []
        result = await run_process(
            ["bash", "-c", "echo one; echo two >&2"],
            timeout=10,
            on_output=lambda stream, text: chunks.append((stream, text)),
        )
        assert "".join(t for s, t in chunks if s == "stdout") == result.stdout
        assert "".join(t for s, t in chunks if s == "stderr") == result.stderr

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        with pytest.raises(FileNotFoundError):
            await run_process(["pls-no-such-binary-xyz"], timeout=5)

    @pytest.mark.asyncio
    async def test_env(self):
        result = await run_process(["bash", "-c", 'echo "$PLS_TEST_VALUE"'], timeout=10,
                                   env={"PLS_TEST_VALUE": "42", "PATH": "/usr/bin:/bin"})
        assert result.stdout.strip() == "42"
