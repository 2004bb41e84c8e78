from __future__ import annotations

import asyncio
import contextlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentflow.backends.base import (
    AgentInvocationError,
    AgentProcessError,
    AgentResult,
    AgentSession,
)

FILE_WRITING_TOOLS = {"Write", "Edit", "MultiEdit", "NotebookEdit"}


@dataclass(slots=True)
class StreamState:
    session_id: str | None = None
    chunks: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    result: str | None = None
    is_error: bool = False
    pending: str = ""

    def decode_line(self, line: str) -> dict[str, Any] | None:
        """Return the event completed by ``line``.

        Only a line opening with ``{`` or ``[`` may start a multi-line event;
        it is held in ``pending`` until its brackets balance. Everything else
        that is not a JSON object is kept as plain output text.
        """
        if self.pending:
            combined = self.pending + line
            event = _parse_object(combined)
            if event is not None:
                self.pending = ""
                return event
            if _parse_object(line) is None and _unbalanced(combined):
                self.pending = combined
                return None
            self.flush()

        event = _parse_object(line)
        if event is None:
            if line.startswith(("{", "[")) and _unbalanced(line):
                self.pending = line
            else:
                self.chunks.append(line)
        return event

    def flush(self) -> None:
        if self.pending:
            self.chunks.append(self.pending)
            self.pending = ""

    def add_file(self, tool_input: object) -> None:
        if not isinstance(tool_input, dict):
            return
        path = tool_input.get("file_path") or tool_input.get("notebook_path")
        if isinstance(path, str) and path not in self.files:
            self.files.append(path)


def _parse_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _unbalanced(text: str) -> bool:
    return text.count("{") > text.count("}") or text.count("[") > text.count("]")


class ClaudeCliAgentSession(AgentSession):
    """Runs each task through ``claude -p`` and reads its stream-json output."""

    supports_resume = True

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        model: str | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model

    @staticmethod
    def build_prompt(agent_type: str, task_id: str, prompt: str) -> str:
        return f"## Agent Role: {agent_type}\n## Task: {task_id}\n\n{prompt}"

    def build_command(self, prompt: str, *, resume_session_id: str | None = None) -> list[str]:
        command = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if self.model:
            command += ["--model", self.model]
        if resume_session_id:
            command += ["--resume", resume_session_id]
        return command

    @staticmethod
    def consume_event(event: dict[str, Any], state: StreamState) -> None:
        if isinstance(event.get("session_id"), str) and event["session_id"]:
            state.session_id = event["session_id"]

        kind = event.get("type")
        if kind == "result":
            if isinstance(event.get("result"), str):
                state.result = event["result"]
            state.is_error = bool(event.get("is_error", False))
        elif kind == "assistant":
            message = event.get("message")
            blocks = message.get("content") if isinstance(message, dict) else None
            for block in blocks if isinstance(blocks, list) else []:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and isinstance(block.get("text"), str):
                    state.chunks.append(block["text"])
                elif block.get("type") == "tool_use" and block.get("name") in FILE_WRITING_TOOLS:
                    state.add_file(block.get("input"))
        elif isinstance(event.get("delta"), str):
            state.chunks.append(event["delta"])

    async def _run(self, command: list[str], agent_type: str | None) -> AgentResult:
        cwd = str(self.working_directory) if self.working_directory else None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"Claude binary not found: {self.binary}",
                agent_type=agent_type,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise AgentProcessError(
                "Claude worker did not expose stdout.", agent_type=agent_type, retriable=False
            )

        state = StreamState()
        stderr_reader = (
            asyncio.create_task(process.stderr.read()) if process.stderr is not None else None
        )
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                event = state.decode_line(line)
                if event is not None:
                    self.consume_event(event, state)
            return_code = await process.wait()
            stderr_output = await stderr_reader if stderr_reader is not None else b""
        finally:
            # Cancellation (the engine's timeout) must not leave the worker running.
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            if stderr_reader is not None and not stderr_reader.done():
                stderr_reader.cancel()
        state.flush()

        stderr_text = stderr_output.decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise AgentInvocationError(
                f"Claude worker failed with exit code {return_code}: {stderr_text}",
                agent_type=agent_type,
                exit_code=return_code,
            )

        summary = (state.result if state.result is not None else "".join(state.chunks)).strip()
        return AgentResult(
            success=not state.is_error,
            summary=summary[:4000],
            files_modified=list(state.files),
            error=summary[:4000] if state.is_error else None,
            agent_session_id=state.session_id,
            agent_type=agent_type,
        )

    async def invoke(
        self,
        agent_type: str,
        task_id: str,
        prompt: str,
        orchestration_session_id: str,
    ) -> AgentResult:
        _ = orchestration_session_id
        command = self.build_command(self.build_prompt(agent_type, task_id, prompt))
        return await self._run(command, agent_type)

    async def resume(
        self,
        prior_agent_session_id: str,
        prompt: str,
        orchestration_session_id: str,
    ) -> AgentResult:
        _ = orchestration_session_id
        command = self.build_command(prompt, resume_session_id=prior_agent_session_id)
        return await self._run(command, agent_type=None)
