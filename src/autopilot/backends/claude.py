from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any
from uuid import uuid4

from autopilot.backends.base import (
    QUESTION_MESSAGE,
    QUESTION_TOOL,
    AgentBackend,
    AgentMessage,
    BackendExecutionError,
    BackendProcessError,
)

logger = logging.getLogger(__name__)

ALLOWED_TOOLS = [
    "Read",
    "Write",
    "Edit",
    "Bash",
    "Glob",
    "Grep",
    "WebFetch",
    "WebSearch",
    "Task",
    "Skill",
    QUESTION_TOOL,
]

SYSTEM_PROMPT_APPEND = (
    "CRITICAL: When you spawn background Task subagents, do NOT end your turn while tasks "
    "are pending. Poll their output files every 10-15 seconds until all tasks complete, "
    "then continue your work. The session ends when you stop making tool calls."
)

STREAM_LINE_LIMIT = 16 * 1024 * 1024


class ClaudeCodeBackend(AgentBackend):
    """Runs the ``claude`` CLI in bidirectional stream-json mode.

    Tool permission checks are routed over stdio. Requests for the human-input
    tool are yielded as ``question_request`` messages and the reply sent back by
    the consumer becomes the tool's answers; every other tool is allowed as-is.
    """

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        max_turns: int | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.max_turns = max_turns

    def build_command(self) -> list[str]:
        command = [
            self.binary,
            "-p",
            "--output-format",
            "stream-json",
            "--input-format",
            "stream-json",
            "--verbose",
            "--permission-prompt-tool",
            "stdio",
            "--permission-mode",
            "bypassPermissions",
            "--allowedTools",
            ",".join(ALLOWED_TOOLS),
            "--append-system-prompt",
            SYSTEM_PROMPT_APPEND,
        ]
        if self.max_turns is not None:
            command.extend(["--max-turns", str(self.max_turns)])
        return command

    @staticmethod
    def build_user_message(prompt: str) -> dict[str, Any]:
        return {
            "type": "user",
            "message": {"role": "user", "content": prompt},
            "parent_tool_use_id": None,
            "session_id": "default",
        }

    @staticmethod
    def build_control_response(request_id: str, response: dict[str, Any]) -> dict[str, Any]:
        return {
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": request_id,
                "response": response,
            },
        }

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def _child_env() -> dict[str, str]:
        env = os.environ.copy()
        # A nested CLI refuses to start when it detects a parent session.
        env.pop("CLAUDECODE", None)
        return env

    @staticmethod
    async def _write_json(process: asyncio.subprocess.Process, payload: dict[str, Any]) -> None:
        if process.stdin is None or process.stdin.is_closing():
            return
        process.stdin.write((json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8"))
        await process.stdin.drain()

    async def stream(
        self,
        prompt: str,
        *,
        cwd: Path | None = None,
    ) -> AsyncGenerator[AgentMessage, dict[str, str] | None]:
        command = self.build_command()
        working_directory = cwd or self.working_directory
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory) if working_directory else None,
                env=self._child_env(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        stderr_task = asyncio.create_task(self._drain(process.stderr))
        saw_result = False
        try:
            await self._write_json(process, self.build_user_message(prompt))

            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    logger.debug("Ignoring non-JSON CLI output: %s", line[:200])
                    continue
                if not isinstance(event, dict):
                    continue

                if event.get("type") == "control_request":
                    request_id = str(event.get("request_id") or uuid4().hex)
                    request = event.get("request") or {}
                    if (
                        request.get("subtype") == "can_use_tool"
                        and request.get("tool_name") == QUESTION_TOOL
                    ):
                        tool_input = request.get("input") or {}
                        answers = yield {
                            "type": QUESTION_MESSAGE,
                            "tool_name": QUESTION_TOOL,
                            "request_id": request_id,
                            "input": tool_input,
                        }
                        updated_input = dict(tool_input)
                        updated_input["answers"] = dict(answers or {})
                        await self._write_json(
                            process,
                            self.build_control_response(
                                request_id,
                                {"behavior": "allow", "updatedInput": updated_input},
                            ),
                        )
                    elif request.get("subtype") == "can_use_tool":
                        await self._write_json(
                            process,
                            self.build_control_response(
                                request_id,
                                {"behavior": "allow", "updatedInput": request.get("input") or {}},
                            ),
                        )
                    else:
                        await self._write_json(process, self.build_control_response(request_id, {}))
                    continue

                yield event
                if event.get("type") == "result":
                    saw_result = True
                    if process.stdin is not None and not process.stdin.is_closing():
                        process.stdin.close()

            return_code = await process.wait()
            stderr_output = await stderr_task
            if return_code != 0 and not saw_result:
                raise BackendExecutionError(
                    f"Claude backend failed with exit code {return_code}: {stderr_output}",
                    backend="claude",
                    exit_code=return_code,
                    retriable=True,
                )
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

    @staticmethod
    async def _drain(reader: asyncio.StreamReader | None) -> str:
        if reader is None:
            return ""
        return (await reader.read()).decode("utf-8", errors="replace").strip()
