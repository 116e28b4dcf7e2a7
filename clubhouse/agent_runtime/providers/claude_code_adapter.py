"""Structured-mode adapter for Claude Code.

Runs ``claude -p`` with stream-json on both stdin and stdout.  The mission
and any follow-up messages are written as stream-json user messages; stdout
records are translated into ``StructuredEvent`` objects:

* assistant ``text`` blocks       -> ``text_done``
* assistant ``thinking`` blocks   -> ``thinking``
* assistant ``tool_use`` blocks   -> ``tool_start`` (with the display verb)
* user ``tool_result`` blocks     -> ``tool_end`` (with the tool's run time)
* ``result``                      -> ``usage`` then ``end``

Print mode has no permission protocol, so permission requests never appear.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import time
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from clubhouse.agent_runtime.execution.jsonl import JsonlParser
from clubhouse.agent_runtime.execution.spawn import build_env, launch
from clubhouse.agent_runtime.log import app_log
from clubhouse.agent_runtime.models.enums import EndReason, StructuredEventType
from clubhouse.agent_runtime.models.events import StructuredEvent
from clubhouse.agent_runtime.models.provider import StructuredSessionOptions
from clubhouse.agent_runtime.providers.shared import is_default_model

if TYPE_CHECKING:
    from clubhouse.agent_runtime.providers.claude_code import ClaudeCodeProvider

NAMESPACE = "core:structured:claude-code"

READ_CHUNK_SIZE = 64 * 1024
STDERR_TAIL_CHARS = 4000


def user_message(text: str) -> bytes:
    record = {"type": "user", "message": {"role": "user", "content": [{"type": "text", "text": text}]}}
    return (json.dumps(record, ensure_ascii=False) + "\n").encode("utf-8")


def build_structured_args(opts: StructuredSessionOptions) -> list[str]:
    args = ["-p", "--input-format", "stream-json", "--output-format", "stream-json", "--verbose"]
    if opts.session_id:
        args += ["--resume", opts.session_id]
    if opts.free_agent_mode:
        args.append("--dangerously-skip-permissions")
    if not is_default_model(opts.model):
        args += ["--model", opts.model]  # type: ignore[list-item]
    for tool in opts.allowed_tools:
        args += ["--allowedTools", tool]
    for tool in opts.disallowed_tools:
        args += ["--disallowedTools", tool]
    if opts.system_prompt:
        args += ["--append-system-prompt", opts.system_prompt]
    return args


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            block["text"] for block in content if isinstance(block, dict) and isinstance(block.get("text"), str)
        )
    return ""


async def _stderr_tail(stream: asyncio.StreamReader | None) -> str:
    """Read ``stream`` to EOF, keeping the last ``STDERR_TAIL_CHARS`` characters."""
    if stream is None:
        return ""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    tail = ""
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        tail = (tail + decoder.decode(chunk, final=not chunk))[-STDERR_TAIL_CHARS:]
        if not chunk:
            return tail


class ClaudeCodeStructuredAdapter:
    def __init__(self, provider: ClaudeCodeProvider) -> None:
        self._provider = provider
        self._process: asyncio.subprocess.Process | None = None
        self._cancelled = False
        # tool_use id -> (name, monotonic start)
        self._open_tools: dict[str, tuple[str, float]] = {}

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    async def start(self, opts: StructuredSessionOptions) -> AsyncIterator[StructuredEvent]:
        binary = await self._provider.find_binary_async()
        env = build_env(await self._provider.shell_environment(), opts.env)
        args = build_structured_args(opts)
        app_log(NAMESPACE, "info", "Starting structured process", {"binary": binary, "cwd": opts.cwd})

        self._process = process = await launch(binary, args, cwd=opts.cwd, env=env, windows=self._provider.is_windows)
        if process.stdout is None:
            raise RuntimeError("Structured process has no stdout pipe")
        # stderr is drained alongside stdout; a full stderr pipe would stall the CLI.
        stderr_task = asyncio.create_task(_stderr_tail(process.stderr), name="structured:claude-code:stderr")
        try:
            await self._write(user_message(opts.mission))

            parser = JsonlParser()
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                text = decoder.decode(chunk, final=not chunk)
                records = parser.feed(text) if chunk else parser.feed(text) + parser.flush()
                for record in records:
                    for event in self._translate(record):
                        yield event
                        if event.type == StructuredEventType.END:
                            return
                if not chunk:
                    break

            code = await process.wait()
            if self._cancelled:
                yield StructuredEvent(type=StructuredEventType.END, data={"reason": EndReason.CANCELLED})
                return
            message = (await stderr_task).strip() or f"Process exited with code {code}"
            yield StructuredEvent(type=StructuredEventType.ERROR, data={"code": "PROCESS_EXIT", "message": message})
            yield StructuredEvent(type=StructuredEventType.END, data={"reason": EndReason.ERROR})
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

    # -- Translation -----------------------------------------------------------

    def _translate(self, record: dict[str, Any]) -> list[StructuredEvent]:
        record_type = record.get("type")
        message = record.get("message")
        blocks = message.get("content") if isinstance(message, dict) else None
        blocks = [b for b in blocks if isinstance(b, dict)] if isinstance(blocks, list) else []

        if record_type == "assistant":
            return [e for e in (self._assistant_block(b) for b in blocks) if e is not None]
        if record_type == "user":
            return [e for e in (self._tool_result(b) for b in blocks) if e is not None]
        if record_type == "result":
            return self._result(record)
        return []

    def _assistant_block(self, block: dict[str, Any]) -> StructuredEvent | None:
        match block.get("type"):
            case "text":
                return StructuredEvent(type=StructuredEventType.TEXT_DONE, data={"text": block.get("text", "")})
            case "thinking":
                return StructuredEvent(
                    type=StructuredEventType.THINKING, data={"text": block.get("thinking", ""), "isPartial": False}
                )
            case "tool_use":
                tool_id = str(block.get("id", ""))
                name = str(block.get("name", "unknown"))
                self._open_tools[tool_id] = (name, time.monotonic())
                tool_input = block.get("input")
                return StructuredEvent(
                    type=StructuredEventType.TOOL_START,
                    data={
                        "id": tool_id,
                        "name": name,
                        "displayVerb": self._provider.tool_verb(name) or "Using tool",
                        "input": tool_input if isinstance(tool_input, dict) else {},
                    },
                )
        return None

    def _tool_result(self, block: dict[str, Any]) -> StructuredEvent | None:
        if block.get("type") != "tool_result":
            return None
        tool_id = str(block.get("tool_use_id", ""))
        name, started = self._open_tools.pop(tool_id, ("unknown", time.monotonic()))
        return StructuredEvent(
            type=StructuredEventType.TOOL_END,
            data={
                "id": tool_id,
                "name": name,
                "result": _tool_result_text(block.get("content")),
                "durationMs": int((time.monotonic() - started) * 1000),
                "status": "error" if block.get("is_error") else "success",
            },
        )

    def _result(self, record: dict[str, Any]) -> list[StructuredEvent]:
        events: list[StructuredEvent] = []
        usage = record.get("usage")
        if isinstance(usage, dict):
            data: dict[str, Any] = {
                "inputTokens": usage.get("input_tokens", 0),
                "outputTokens": usage.get("output_tokens", 0),
            }
            if "cache_read_input_tokens" in usage:
                data["cacheReadTokens"] = usage["cache_read_input_tokens"]
            if "cache_creation_input_tokens" in usage:
                data["cacheWriteTokens"] = usage["cache_creation_input_tokens"]
            cost = record.get("total_cost_usd", record.get("cost_usd"))
            if isinstance(cost, int | float):
                data["costUsd"] = cost
            events.append(StructuredEvent(type=StructuredEventType.USAGE, data=data))

        summary = record.get("result")
        if record.get("is_error"):
            events.append(
                StructuredEvent(
                    type=StructuredEventType.ERROR,
                    data={"code": str(record.get("subtype") or "RESULT_ERROR"), "message": str(summary or "Run failed")},
                )
            )
            events.append(StructuredEvent(type=StructuredEventType.END, data={"reason": EndReason.ERROR}))
        else:
            end: dict[str, Any] = {"reason": EndReason.COMPLETE}
            if isinstance(summary, str):
                end["summary"] = summary
            events.append(StructuredEvent(type=StructuredEventType.END, data=end))
        return events

    # -- Control ---------------------------------------------------------------

    async def _write(self, payload: bytes) -> None:
        if self._process is None or self._process.stdin is None:
            raise RuntimeError("Structured process is not running")
        self._process.stdin.write(payload)
        await self._process.stdin.drain()

    async def send_message(self, message: str) -> None:
        await self._write(user_message(message))

    async def respond_to_permission(self, request_id: str, approved: bool, reason: str | None = None) -> None:
        raise NotImplementedError("Claude Code print mode has no permission protocol")

    async def cancel(self) -> None:
        self._cancelled = True
        if self._process is None or self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

    def dispose(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
