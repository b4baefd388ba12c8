from __future__ import annotations

import asyncio
import os
import tempfile
import time
from pathlib import Path
from typing import Any, AsyncIterator

import pytest

from cynosure_bridge.engine.orchestrator import InvocationOrchestrator
from cynosure_bridge.engine.types import StreamEvent, TranslatedQuery
from cynosure_bridge.errors import TransportError
from cynosure_bridge.invokers.subprocess_cli import (
    SubprocessInvoker,
    describe_cli_failure,
    prompt_file,
)


def _write_cli(tmp_path: Path, body: str, name: str = "fake-claude") -> str:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return str(path)


def _query(tmp_path: Path, **overrides: Any) -> TranslatedQuery:
    values: dict[str, Any] = {
        "prompt": "Human: hello there",
        "system_prompt": None,
        "max_turns": 5,
        "working_directory": str(tmp_path),
        "model": "claude-3-5-sonnet-20241022",
        "requested_model": "gpt-4o",
    }
    values.update(overrides)
    return TranslatedQuery(**values)


@pytest.fixture
def prompt_dir(tmp_path: Path, monkeypatch: Any) -> Path:
    directory = tmp_path / "prompts"
    directory.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(directory))
    return directory


async def _drain(events: AsyncIterator[StreamEvent]) -> list[StreamEvent]:
    return [event async for event in events]


def test_prompt_file_is_removed_on_error(prompt_dir: Path) -> None:
    with pytest.raises(RuntimeError):
        with prompt_file("secret prompt") as path:
            assert path.read_text(encoding="utf-8") == "secret prompt"
            assert path.name.startswith("claude_prompt_")
            assert path.suffix == ".txt"
            raise RuntimeError("boom")

    assert list(prompt_dir.iterdir()) == []


def test_build_command_includes_turns_and_system_prompt(tmp_path: Path) -> None:
    invoker = SubprocessInvoker(executable="claude")

    assert invoker.build_command(_query(tmp_path), stream=False) == [
        "claude",
        "-p",
        "--output-format",
        "json",
        "--max-turns",
        "5",
    ]
    assert invoker.build_command(
        _query(tmp_path, system_prompt="Be brief.", max_turns=7), stream=True
    ) == [
        "claude",
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--max-turns",
        "7",
        "--append-system-prompt",
        "Be brief.",
    ]


def test_invoke_feeds_prompt_on_stdin_and_parses_result(
    tmp_path: Path, prompt_dir: Path
) -> None:
    captured = tmp_path / "stdin.txt"
    cli = _write_cli(
        tmp_path,
        f"""cat > "{captured}"
pwd > "{tmp_path / 'cwd.txt'}"
echo "Session ID: sess-42" >&2
echo "Cost: \\$0.0123" >&2
echo "Duration: 2.5s" >&2
echo "20 prompt + 4 completion = 24 tokens" >&2
cat <<'JSON'
{{"type": "result", "result": "Hello from CLI", "is_error": false, "session_id": "sess-42"}}
JSON
""",
    )

    result = asyncio.run(SubprocessInvoker(executable=cli).invoke(_query(tmp_path)))

    assert captured.read_text(encoding="utf-8") == "Human: hello there"
    cwd = (tmp_path / "cwd.txt").read_text(encoding="utf-8").strip()
    assert Path(cwd).resolve() == tmp_path.resolve()
    assert [message.text for message in result.text_messages()] == ["Hello from CLI"]
    assert result.session_id == "sess-42"
    assert result.metadata is not None
    assert result.metadata.cost == 0.0123
    assert result.metadata.duration_seconds == 2.5
    assert result.usage is not None
    assert result.usage.total_tokens == 24
    assert result.invoker == "subprocess"
    assert list(prompt_dir.iterdir()) == []


def test_nonzero_exit_with_valid_result_is_success(tmp_path: Path) -> None:
    cli = _write_cli(
        tmp_path,
        """cat > /dev/null
echo "Invalid API key · Please run /login" >&2
cat <<'JSON'
{"type": "result", "result": "Still answered", "is_error": false}
JSON
exit 1
""",
    )

    result = asyncio.run(SubprocessInvoker(executable=cli).invoke(_query(tmp_path)))

    assert [message.text for message in result.text_messages()] == ["Still answered"]
    assert result.usage is None


def test_usage_falls_back_to_result_json(tmp_path: Path) -> None:
    cli = _write_cli(
        tmp_path,
        """cat > /dev/null
cat <<'JSON'
{"result": "ok", "session_id": "json-s", "total_cost_usd": 0.5, "usage": {"input_tokens": 7, "output_tokens": 3}}
JSON
""",
    )

    result = asyncio.run(SubprocessInvoker(executable=cli).invoke(_query(tmp_path)))

    assert result.session_id == "json-s"
    assert result.usage is not None
    assert (result.usage.prompt_tokens, result.usage.total_tokens) == (7, 10)
    assert result.metadata is not None
    assert result.metadata.cost == 0.5


def test_is_error_result_raises_transport_error(tmp_path: Path) -> None:
    cli = _write_cli(
        tmp_path,
        """cat > /dev/null
cat <<'JSON'
{"result": "Max turns reached", "is_error": true}
JSON
""",
    )

    with pytest.raises(TransportError, match="CLI error: Max turns reached"):
        asyncio.run(SubprocessInvoker(executable=cli).invoke(_query(tmp_path)))


def test_empty_stdout_surfaces_stderr_tail(tmp_path: Path, prompt_dir: Path) -> None:
    cli = _write_cli(
        tmp_path,
        """cat > /dev/null
echo "something exploded" >&2
exit 3
""",
    )

    with pytest.raises(TransportError, match="something exploded") as excinfo:
        asyncio.run(SubprocessInvoker(executable=cli).invoke(_query(tmp_path)))

    assert "code 3" in excinfo.value.message
    assert list(prompt_dir.iterdir()) == []


def test_missing_executable_is_reported_as_not_found(tmp_path: Path) -> None:
    invoker = SubprocessInvoker(executable=str(tmp_path / "no-such-claude"))

    with pytest.raises(TransportError, match="not found"):
        asyncio.run(invoker.invoke(_query(tmp_path)))


def test_describe_cli_failure_rewordings() -> None:
    assert "not found" in describe_cli_failure("claude", 127, "")
    assert "not found" in describe_cli_failure("claude", 1, "sh: claude: command not found")
    assert "timed out" in describe_cli_failure("claude", 1, "Request timeout")
    assert "API key warning" in describe_cli_failure("claude", 1, "Invalid API key")
    assert describe_cli_failure("claude", 2, "") == (
        "CLI exited with code 2 without a usable result."
    )


def test_stream_parses_ndjson_lines(tmp_path: Path, prompt_dir: Path) -> None:
    cli = _write_cli(
        tmp_path,
        """cat > /dev/null
cat <<'JSON'
{"type": "system", "subtype": "init", "session_id": "s-9"}
this line is not json
{"type": "assistant", "message": {"content": [{"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}}]}}
{"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "a.txt"}]}}
{"type": "result", "result": "Done", "session_id": "s-9", "usage": {"input_tokens": 4, "output_tokens": 2}}
JSON
""",
    )

    events = asyncio.run(
        _drain(SubprocessInvoker(executable=cli).stream(_query(tmp_path)))
    )

    kinds = [event.message.kind for event in events if event.message is not None]
    assert kinds == ["tool_use", "tool_result", "text"]
    assert events[2].message is not None
    assert events[2].message.text == "Done"
    terminal = events[-1]
    assert terminal.finished
    assert terminal.session_id == "s-9"
    assert terminal.usage is not None
    assert terminal.usage.total_tokens == 6
    assert list(prompt_dir.iterdir()) == []


def test_stream_stops_at_finished_flag(tmp_path: Path) -> None:
    cli = _write_cli(
        tmp_path,
        """cat > /dev/null
cat <<'JSON'
{"result": "first"}
{"result": "second", "finished": true}
{"result": "ignored"}
JSON
""",
    )

    events = asyncio.run(
        _drain(SubprocessInvoker(executable=cli).stream(_query(tmp_path)))
    )

    assert [event.message.text for event in events if event.message] == [
        "first",
        "second",
    ]
    assert events[-1].finished


def test_stream_failure_without_output_raises(tmp_path: Path) -> None:
    cli = _write_cli(
        tmp_path,
        """cat > /dev/null
echo "fatal: no session" >&2
exit 2
""",
    )

    with pytest.raises(TransportError, match="fatal: no session"):
        asyncio.run(_drain(SubprocessInvoker(executable=cli).stream(_query(tmp_path))))


def test_timeout_kills_child_process(tmp_path: Path, prompt_dir: Path) -> None:
    pid_file = tmp_path / "pid"
    cli = _write_cli(tmp_path, f'echo $$ > "{pid_file}"\nexec sleep 30\n')
    orchestrator = InvocationOrchestrator(
        SubprocessInvoker(executable=cli), timeout_seconds=0.5
    )

    started = time.monotonic()
    with pytest.raises(TransportError, match="timed out"):
        asyncio.run(orchestrator.invoke(_query(tmp_path)))

    assert time.monotonic() - started < 10
    pid = int(pid_file.read_text(encoding="utf-8").strip())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    assert list(prompt_dir.iterdir()) == []
