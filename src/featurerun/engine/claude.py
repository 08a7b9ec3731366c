from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from featurerun.config import AgentConfig
from featurerun.engine.base import (
    AgentEvent,
    AgentTransport,
    ExecutionRequest,
    OtherEvent,
    TerminalSummary,
    TextFragment,
    TransportError,
)

logger = logging.getLogger(__name__)

# stream-json writes whole messages, tool results included, as single lines.
STREAM_LINE_LIMIT = 32 * 1024 * 1024
STDERR_TAIL_BYTES = 16 * 1024
STDERR_READ_SIZE = 4096


class ClaudeCodeTransport(AgentTransport):
    """Drives the ``claude`` CLI in stream-json mode as one agent session."""

    def __init__(
        self,
        *,
        binary: str = "claude",
        model: str | None = None,
        max_turns: int | None = None,
        permission_mode: str = "default",
        system_prompt: str | None = None,
        allowed_tools: list[str] | None = None,
        disallowed_tools: list[str] | None = None,
        working_directory: Path | None = None,
        terminate_grace_seconds: float = 5.0,
    ) -> None:
        self.binary = binary
        self.model = model
        self.max_turns = max_turns
        self.permission_mode = permission_mode
        self.system_prompt = system_prompt
        self.allowed_tools = list(allowed_tools or [])
        self.disallowed_tools = list(disallowed_tools or [])
        self.working_directory = working_directory
        self.terminate_grace_seconds = terminate_grace_seconds
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_tail = b""

    @classmethod
    def from_request(cls, request: ExecutionRequest, config: AgentConfig) -> ClaudeCodeTransport:
        return cls(
            binary=config.binary,
            model=config.model,
            max_turns=config.max_turns,
            permission_mode=config.permission_mode,
            system_prompt=request.system_prompt,
            allowed_tools=request.allowed_tools,
            disallowed_tools=request.disallowed_tools,
            working_directory=request.context.repo_path,
        )

    def build_command(self) -> list[str]:
        command = [
            self.binary,
            "--print",
            "--input-format",
            "stream-json",
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            self.permission_mode,
        ]
        if self.model:
            command.extend(["--model", self.model])
        if self.max_turns:
            command.extend(["--max-turns", str(self.max_turns)])
        if self.system_prompt:
            command.extend(["--system-prompt", self.system_prompt])
        if self.allowed_tools:
            command.extend(["--allowedTools", ",".join(self.allowed_tools)])
        if self.disallowed_tools:
            command.extend(["--disallowedTools", ",".join(self.disallowed_tools)])
        return command

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def _extract_text(message: Any) -> str:
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        if isinstance(content, str):
            return content
        parts: list[str] = []
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text":
                    text = block.get("text")
                    if isinstance(text, str):
                        parts.append(text)
        return "".join(parts)

    @classmethod
    def parse_event(cls, event: dict[str, Any]) -> AgentEvent:
        event_type = str(event.get("type", ""))
        if event_type == "assistant":
            text = cls._extract_text(event.get("message"))
            if text:
                return TextFragment(text)
            return OtherEvent(kind=event_type, payload=event)
        if event_type == "result":
            usage = event.get("usage") if isinstance(event.get("usage"), dict) else {}
            cost = event.get("total_cost_usd")
            return TerminalSummary(
                turns=int(event.get("num_turns") or 0),
                cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
                is_error=bool(event.get("is_error", False)),
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
            )
        return OtherEvent(kind=event_type or "unknown", payload=event)

    async def connect(self) -> None:
        command = self.build_command()
        logger.debug("Starting agent process: %s", command[0])
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise TransportError(f"Claude binary not found: {self.binary}") from exc
        except OSError as exc:
            raise TransportError(f"Failed to start {self.binary}: {exc}") from exc
        self._stderr_tail = b""
        if self._process.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr(self._process.stderr))

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(STDERR_READ_SIZE)
            if not chunk:
                return
            self._stderr_tail = (self._stderr_tail + chunk)[-STDERR_TAIL_BYTES:]

    async def _stderr_output(self) -> str:
        task = self._stderr_task
        if task is not None:
            await asyncio.wait({task}, timeout=self.terminate_grace_seconds)
        return self._stderr_tail.decode("utf-8", errors="replace").strip()

    async def send(self, prompt: str) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise TransportError("Agent session is not connected.")
        message = {
            "type": "user",
            "message": {"role": "user", "content": [{"type": "text", "text": prompt}]},
        }
        try:
            process.stdin.write((json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise TransportError(f"Agent process closed its input: {exc}") from exc

    async def stream_events(self) -> AsyncIterator[AgentEvent]:
        process = self._process
        if process is None or process.stdout is None:
            raise TransportError("Agent session is not connected.")

        saw_terminal = False
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
                yield OtherEvent(kind="raw", payload={"line": line})
                continue
            if not isinstance(event, dict):
                continue

            parsed = self.parse_event(event)
            if isinstance(parsed, TerminalSummary):
                saw_terminal = True
            yield parsed

        return_code = await process.wait()
        if return_code != 0 and not saw_terminal:
            stderr_output = await self._stderr_output()
            raise TransportError(
                f"Claude process failed with exit code {return_code}: {stderr_output}"
            )

    async def disconnect(self) -> None:
        process = self._process
        self._process = None
        stderr_task = self._stderr_task
        self._stderr_task = None
        if stderr_task is not None and not stderr_task.done():
            stderr_task.cancel()
            await asyncio.wait({stderr_task})
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
        except TimeoutError:
            process.kill()
            await process.wait()
