"""
Tests for ToolInvoker: exit handling, streaming, timeout and cancellation.
"""

import sys
import threading
import time

import pytest

from apply_errors import ApplyError, ProcessCancelledError, ProcessTimeoutError, ToolExitError
from apply_session import ApplySession, ProcessRegistry
from tool_runner import MOD_TOOLS_EXE_NAME, ModTools, ToolInvoker
from tests.conftest import FAKE_TOOLS, read_calls, wait_for

COMMAND = [sys.executable, str(FAKE_TOOLS)]


@pytest.fixture
def session():
    return ApplySession("test")


def test_success_returns_stdout(session, tool_state):
    out = ToolInvoker(session).run(COMMAND, ["echo", "alpha", "beta"], timeout=30)
    assert out.splitlines() == ["alpha", "beta"]
    assert len(session.processes) == 0


def test_nonzero_exit_carries_code_and_stderr(session, tool_state):
    with pytest.raises(ToolExitError) as excinfo:
        ToolInvoker(session).run(COMMAND, ["fail", "7"], timeout=30)
    assert excinfo.value.returncode == 7
    assert "something broke" in excinfo.value.stderr
    assert len(session.processes) == 0


def test_missing_executable(session):
    with pytest.raises(ApplyError, match="Could not start"):
        ToolInvoker(session).run(["/definitely/not/here/mod-tools.exe"], ["import"], timeout=5)
    assert len(session.processes) == 0


def test_streaming_filters_stderr(session, tool_state):
    lines = []
    ToolInvoker(session, on_status=lines.append).run(
        COMMAND, ["echo", "first", "second"], timeout=30, stream_output=True
    )
    assert "first" in lines
    assert "second" in lines
    assert "[INFO] status on stderr" in lines
    assert "unrelated diagnostic" not in lines


def test_no_streaming_without_flag(session, tool_state):
    lines = []
    ToolInvoker(session, on_status=lines.append).run(COMMAND, ["echo", "quiet"], timeout=30)
    assert lines == []


def test_timeout_kills_and_deregisters(session, tool_state):
    started = time.monotonic()
    with pytest.raises(ProcessTimeoutError):
        ToolInvoker(session).run(COMMAND, ["hang"], timeout=0.1)
    elapsed = time.monotonic() - started

    assert elapsed < 1.0
    assert len(session.processes) == 0


def test_refuses_to_start_when_cancelled(session, tool_state):
    session.cancel()
    with pytest.raises(ProcessCancelledError):
        ToolInvoker(session).run(COMMAND, ["echo", "never"], timeout=30)
    assert read_calls(tool_state) == []


def test_cancellation_flag_stops_running_call(session, tool_state):
    invoker = ToolInvoker(session)
    threading.Timer(0.3, session.cancel).start()

    started = time.monotonic()
    with pytest.raises(ProcessCancelledError):
        invoker.run(COMMAND, ["hang"], timeout=30)

    assert time.monotonic() - started < 10
    assert len(session.processes) == 0


def test_external_kill_after_cancel_is_reported_as_cancelled(session, tool_state):
    invoker = ToolInvoker(session)
    errors = []

    def worker():
        try:
            invoker.run(COMMAND, ["hang"], timeout=30)
        except ApplyError as exc:
            errors.append(exc)

    thread = threading.Thread(target=worker)
    thread.start()
    assert wait_for(lambda: len(session.processes) == 1)

    session.cancel()
    assert session.processes.kill_all() in (0, 1)
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert len(errors) == 1
    assert isinstance(errors[0], ProcessCancelledError)
    assert len(session.processes) == 0


# ── registry / ModTools ───────────────────────────────────────────────────────

def test_registry_deregisters_on_exception():
    registry = ProcessRegistry()
    with pytest.raises(RuntimeError):
        with registry.track(object()) as handle_id:
            assert handle_id in registry
            raise RuntimeError("boom")
    assert len(registry) == 0
    assert handle_id not in registry


def test_mod_tools_command(tmp_path):
    tools = ModTools.from_dir(tmp_path)
    assert tools.image_name == MOD_TOOLS_EXE_NAME
    assert tools.exists() is False
    (tmp_path / MOD_TOOLS_EXE_NAME).write_bytes(b"MZ")
    assert tools.exists() is True
    assert tools.command("import", "a") == [str(tmp_path / MOD_TOOLS_EXE_NAME), "import", "a"]

    scripted = ModTools(FAKE_TOOLS, launcher=(sys.executable,))
    assert scripted.command("hang") == [sys.executable, str(FAKE_TOOLS), "hang"]
