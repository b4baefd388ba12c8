from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator, Iterator

from cynosure_bridge.engine.metadata import extract_metadata
from cynosure_bridge.engine.types import (
    ContentMessage,
    InvocationResult,
    Metadata,
    StreamEvent,
    ToolDescriptor,
    TranslatedQuery,
)
from cynosure_bridge.errors import TransportError

logger = logging.getLogger("uvicorn.error")

PROMPT_FILE_PREFIX = "claude_prompt_"
DEFAULT_STREAM_LIMIT = 16 * 1024 * 1024
EXIT_CODE_COMMAND_NOT_FOUND = 127


@contextlib.contextmanager
def prompt_file(prompt: str) -> Iterator[Path]:
    """Write ``prompt`` to a uniquely named temp file, removed on every exit path."""
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        prefix=PROMPT_FILE_PREFIX,
        suffix=".txt",
        delete=False,
    )
    path = Path(handle.name)
    try:
        with handle:
            handle.write(prompt)
        yield path
    finally:
        with contextlib.suppress(OSError):
            path.unlink(missing_ok=True)


def describe_cli_failure(executable: str, returncode: int | None, stderr: str) -> str:
    lowered = stderr.lower()
    if returncode == EXIT_CODE_COMMAND_NOT_FOUND or "command not found" in lowered:
        return (
            f"CLI executable '{executable}' not found. "
            "Please ensure Claude Code is installed."
        )
    if "timed out" in lowered or "timeout" in lowered:
        return "CLI request timed out. Please try again."
    if "invalid api key" in lowered:
        return (
            "CLI printed an API key warning and returned no answer. Local CLI "
            "sessions do not need an API key; check that the CLI is logged in."
        )
    tail = stderr.strip()[-500:]
    message = f"CLI exited with code {returncode} without a usable result"
    return f"{message}: {tail}" if tail else f"{message}."


def parse_result_payload(stdout: str) -> dict[str, Any] | None:
    text = stdout.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def merge_payload_metadata(metadata: Metadata, payload: dict[str, Any] | None) -> Metadata:
    """Fill fields the stderr banner did not provide from the JSON result line."""
    if not payload:
        return metadata
    if metadata.session_id is None and isinstance(payload.get("session_id"), str):
        metadata.session_id = payload["session_id"]
    if metadata.cost is None:
        for key in ("total_cost_usd", "cost_usd"):
            value = payload.get(key)
            if isinstance(value, (int, float)):
                metadata.cost = float(value)
                break
    if metadata.duration_seconds is None and isinstance(
        payload.get("duration_ms"), (int, float)
    ):
        metadata.duration_seconds = payload["duration_ms"] / 1000.0
    usage = payload.get("usage")
    if metadata.usage() is None and isinstance(usage, dict):
        input_tokens = usage.get("input_tokens")
        output_tokens = usage.get("output_tokens")
        if isinstance(input_tokens, int) and isinstance(output_tokens, int):
            metadata.prompt_tokens = input_tokens
            metadata.completion_tokens = output_tokens
            metadata.total_tokens = input_tokens + output_tokens
    return metadata


def _coerce_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            else:
                parts.append(_coerce_text(item))
        return "\n".join(part for part in parts if part)
    return json.dumps(value, ensure_ascii=False)


def tool_messages(line: dict[str, Any]) -> list[ContentMessage]:
    message = line.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []

    found: list[ContentMessage] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "tool_use":
            name = block.get("name") if isinstance(block.get("name"), str) else "unknown"
            tool_input = block.get("input") or {}
            found.append(
                ContentMessage(
                    kind="tool_use",
                    text=f"Tool: {name}\nInput: {json.dumps(tool_input, indent=2)}",
                    tool=ToolDescriptor(name=name, input=tool_input),
                )
            )
        elif block_type == "tool_result":
            tool_use_id = block.get("tool_use_id")
            output = _coerce_text(block.get("content"))
            found.append(
                ContentMessage(
                    kind="tool_result",
                    text=output,
                    tool=ToolDescriptor(
                        name=tool_use_id if isinstance(tool_use_id, str) else "unknown",
                        input={},
                        output=output,
                    ),
                )
            )
    return found


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()


async def _read_all(reader: asyncio.StreamReader | None) -> bytes:
    if reader is None:
        return b""
    return await reader.read()


class SubprocessInvoker:
    name = "subprocess"
    supports_images = False

    def __init__(
        self,
        *,
        executable: str = "claude",
        stream_limit: int = DEFAULT_STREAM_LIMIT,
    ) -> None:
        self.executable = executable
        self.stream_limit = stream_limit

    def build_command(self, query: TranslatedQuery, *, stream: bool) -> list[str]:
        command = [
            self.executable,
            "-p",
            "--output-format",
            "stream-json" if stream else "json",
        ]
        if stream:
            command.append("--verbose")
        command.extend(["--max-turns", str(query.max_turns)])
        if query.system_prompt:
            command.extend(["--append-system-prompt", query.system_prompt])
        return command

    async def _spawn(
        self, command: list[str], stdin_path: Path, cwd: str
    ) -> asyncio.subprocess.Process:
        with stdin_path.open("rb") as stdin:
            try:
                return await asyncio.create_subprocess_exec(
                    *command,
                    stdin=stdin,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    limit=self.stream_limit,
                )
            except FileNotFoundError as exc:
                raise TransportError(
                    describe_cli_failure(
                        self.executable, EXIT_CODE_COMMAND_NOT_FOUND, ""
                    ),
                    invoker=self.name,
                ) from exc
            except PermissionError as exc:
                raise TransportError(
                    f"CLI executable '{self.executable}' is not executable: {exc}",
                    invoker=self.name,
                ) from exc

    async def invoke(self, query: TranslatedQuery) -> InvocationResult:
        with prompt_file(query.prompt) as path:
            process = await self._spawn(
                self.build_command(query, stream=False),
                path,
                query.working_directory,
            )
            try:
                stdout_raw, stderr_raw = await process.communicate()
            finally:
                await _terminate(process)

        returncode = process.returncode
        stdout = stdout_raw.decode("utf-8", "replace")
        stderr = stderr_raw.decode("utf-8", "replace")
        payload = parse_result_payload(stdout)
        if payload is None:
            logger.warning(
                "subprocess_unusable_output returncode=%s stdout_bytes=%d",
                returncode,
                len(stdout_raw),
            )
            raise TransportError(
                describe_cli_failure(self.executable, returncode, stderr),
                invoker=self.name,
            )
        if payload.get("is_error"):
            raise TransportError(
                f"CLI error: {_coerce_text(payload.get('result')) or 'unknown error'}",
                invoker=self.name,
            )

        result_text = payload.get("result")
        has_result = isinstance(result_text, str) and bool(result_text)
        if not has_result and returncode != 0:
            raise TransportError(
                describe_cli_failure(self.executable, returncode, stderr),
                invoker=self.name,
            )
        if returncode != 0:
            # The CLI sometimes exits non-zero over a credential warning while
            # still printing a valid answer.
            logger.warning(
                "subprocess_nonzero_exit_with_result returncode=%s", returncode
            )

        metadata = merge_payload_metadata(extract_metadata(stderr), payload)
        messages = (
            [ContentMessage(kind="text", text=result_text)] if has_result else []
        )
        return InvocationResult(
            messages=messages,
            usage=metadata.usage(),
            backend_model=query.model,
            conversation_id=query.conversation_id,
            finished=True,
            invoker=self.name,
            session_id=metadata.session_id,
            metadata=metadata,
        )

    async def stream(self, query: TranslatedQuery) -> AsyncIterator[StreamEvent]:
        with prompt_file(query.prompt) as path:
            process = await self._spawn(
                self.build_command(query, stream=True),
                path,
                query.working_directory,
            )
            stderr_task = asyncio.create_task(_read_all(process.stderr))
            emitted_text = False
            last_payload: dict[str, Any] | None = None
            try:
                if process.stdout is not None:
                    async for raw_line in process.stdout:
                        line = raw_line.decode("utf-8", "replace").strip()
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except ValueError:
                            continue
                        if not isinstance(data, dict):
                            continue
                        if data.get("is_error"):
                            raise TransportError(
                                "CLI error: "
                                f"{_coerce_text(data.get('result')) or 'unknown error'}",
                                invoker=self.name,
                            )
                        for message in tool_messages(data):
                            yield StreamEvent(message=message)
                        result = data.get("result")
                        if isinstance(result, str) and result:
                            emitted_text = True
                            last_payload = data
                            yield StreamEvent(
                                message=ContentMessage(kind="text", text=result)
                            )
                        if data.get("finished"):
                            break
                returncode = await process.wait()
                stderr = (await stderr_task).decode("utf-8", "replace")
            finally:
                await _terminate(process)
                if not stderr_task.done():
                    stderr_task.cancel()

        if not emitted_text and returncode != 0:
            raise TransportError(
                describe_cli_failure(self.executable, returncode, stderr),
                invoker=self.name,
            )
        metadata = merge_payload_metadata(extract_metadata(stderr), last_payload)
        yield StreamEvent(
            finished=True,
            finish_reason="stop",
            usage=metadata.usage(),
            session_id=metadata.session_id,
        )
