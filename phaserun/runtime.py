"""
Agent runtime capability.

WHAT THIS FILE DOES:
-------------------
The engine never talks to a model directly. It builds an InvokeRequest and
consumes an async stream of EngineEvents from whatever AgentRuntime it was
given:

    runtime.invoke(request)  ->  text_delta, tool_start, tool_end, ..., text_final

collect_runtime_text() drains that stream into the agent's final answer.
ClaudeCliRuntime is the production runtime: it drives the ``claude`` CLI in
print mode with ``--output-format stream-json`` and translates its JSON lines
into EngineEvents.

CANCELLATION:
------------
Cooperative. Every request may carry an asyncio.Event; collect_runtime_text
checks it before the call and after every event, and ClaudeCliRuntime kills
the child process as soon as it is set.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

from .schemas import EngineEvent


logger = logging.getLogger("phaserun.runtime")

EventObserver = Callable[[EngineEvent], Union[Awaitable[None], None]]


class AgentRunError(RuntimeError):
    """The agent run produced an error event or could not be started."""


class AgentCancelledError(AgentRunError):
    """The run was cancelled through its cancel_event."""


@dataclass
class InvokeRequest:
    prompt: str
    model: str
    cwd: Path
    tools: list[str] = field(default_factory=list)
    extra_dirs: list[Path] = field(default_factory=list)
    timeout_seconds: Optional[float] = None
    cancel_event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class AgentRuntime(Protocol):
    def invoke(self, request: InvokeRequest) -> AsyncIterator[EngineEvent]:
        """Start an agent run and stream its events."""
        ...


async def _notify(observer: Optional[EventObserver], event: EngineEvent) -> None:
    if observer is None:
        return
    try:
        result = observer(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.warning(f"Event observer raised on {event.type} event; ignoring", exc_info=True)


async def collect_runtime_text(
    runtime: AgentRuntime,
    request: InvokeRequest,
    observer: Optional[EventObserver] = None,
) -> str:
    """
    Run the agent to completion and return its final text.

    The explicit text_final event wins; without one, the accumulated
    text_delta chunks are returned.

    Args:
        runtime: Agent runtime to invoke
        request: Prompt, model, cwd, tools and limits for the run
        observer: Optional callback (sync or async) that sees every event.
                  Exceptions it raises are logged and ignored.

    Raises:
        AgentCancelledError: If the cancel event is set before or during the run
        AgentRunError: If the runtime emits an error event
    """
    if request.cancelled:
        raise AgentCancelledError("Cancelled before the agent run started")

    final_text: Optional[str] = None
    deltas: list[str] = []

    stream = runtime.invoke(request)
    try:
        async for event in stream:
            await _notify(observer, event)

            if request.cancelled:
                raise AgentCancelledError("Agent run cancelled")

            if event.type == "text_delta":
                deltas.append(event.text)
            elif event.type == "text_final":
                final_text = event.text
            elif event.type == "error":
                raise AgentRunError(event.message or event.text or "Agent runtime reported an error")
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    if request.cancelled:
        raise AgentCancelledError("Agent run cancelled")

    return final_text if final_text is not None else "".join(deltas)


# =============================================================================
# CLAUDE CLI RUNTIME
# =============================================================================

def parse_stream_json_line(line: str) -> list[EngineEvent]:
    """
    Translate one line of ``claude --output-format stream-json`` output.

    Non-JSON lines come back as log_line events.
    """
    line = line.strip()
    if not line:
        return []
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return [EngineEvent(type="log_line", text=line)]
    if not isinstance(data, dict):
        return [EngineEvent(type="log_line", text=line)]

    events: list[EngineEvent] = []
    event_type = data.get("type")

    if event_type == "assistant":
        for block in (data.get("message") or {}).get("content") or []:
            if block.get("type") == "text" and block.get("text"):
                events.append(EngineEvent(type="text_delta", text=block["text"]))
            elif block.get("type") == "tool_use":
                events.append(EngineEvent(type="tool_start", tool=block.get("name")))

    elif event_type == "user":
        for block in (data.get("message") or {}).get("content") or []:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                events.append(EngineEvent(type="tool_end", tool=block.get("tool_use_id")))

    elif event_type == "result":
        if data.get("is_error") or data.get("subtype", "success") != "success":
            message = data.get("result") or f"Agent run ended with {data.get('subtype', 'an error')}"
            events.append(EngineEvent(type="error", message=str(message)))
        else:
            events.append(EngineEvent(type="text_final", text=str(data.get("result") or "")))

    return events


class ClaudeCliRuntime:
    """
    AgentRuntime that shells out to the Claude Code CLI.

    Example:
        runtime = ClaudeCliRuntime(binary="claude")
        text = await collect_runtime_text(runtime, InvokeRequest(
            prompt="Summarize README.md", model="opus", cwd=Path("."),
            tools=["Read"],
        ))
    """

    # stream-json lines can carry whole file contents
    STREAM_LIMIT = 16 * 1024 * 1024

    def __init__(self, binary: str = "claude", extra_args: Optional[list[str]] = None):
        self.binary = binary
        self.extra_args = list(extra_args or [])

    def build_command(self, request: InvokeRequest) -> list[str]:
        cmd = [
            self.binary,
            "-p",
            "--output-format", "stream-json",
            "--verbose",
            "--model", request.model,
        ]
        if request.tools:
            cmd += ["--allowedTools", ",".join(request.tools)]
        for directory in request.extra_dirs:
            cmd += ["--add-dir", str(directory)]
        return cmd + self.extra_args

    async def invoke(self, request: InvokeRequest) -> AsyncIterator[EngineEvent]:
        cmd = self.build_command(request)
        logger.debug(f"Starting agent: {' '.join(cmd)} (cwd={request.cwd})")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(request.cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.STREAM_LIMIT,
            )
        except FileNotFoundError:
            yield EngineEvent(type="error", message=f"Agent binary not found: {self.binary}")
            return
        except OSError as e:
            yield EngineEvent(type="error", message=f"Could not start {self.binary}: {e}")
            return

        stderr_task = asyncio.create_task(proc.stderr.read())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + request.timeout_seconds if request.timeout_seconds else None
        saw_result = False

        try:
            try:
                proc.stdin.write(request.prompt.encode("utf-8"))
                await proc.stdin.drain()
                proc.stdin.close()
            except (BrokenPipeError, ConnectionResetError) as e:
                yield EngineEvent(type="error", message=f"{self.binary} closed its input early: {e}")
                return

            while True:
                outcome, line = await self._next_line(proc, request, deadline)
                if outcome == "cancelled":
                    yield EngineEvent(type="error", message="Agent run cancelled")
                    return
                if outcome == "timeout":
                    yield EngineEvent(type="error", message=f"Agent run timed out after {request.timeout_seconds:g}s")
                    return
                if outcome == "eof":
                    break
                for event in parse_stream_json_line(line):
                    if event.type in ("text_final", "error"):
                        saw_result = True
                    yield event

            returncode = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
            if returncode != 0 and not saw_result:
                yield EngineEvent(
                    type="error",
                    message=f"{self.binary} exited with code {returncode}: {stderr[-2000:] or '(no stderr)'}",
                )
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()

    async def _next_line(self, proc, request: InvokeRequest, deadline: Optional[float]) -> tuple[str, str]:
        """Wait for the next stdout line, the cancel event, or the deadline."""
        read_task = asyncio.ensure_future(proc.stdout.readline())
        waiters = {read_task}
        cancel_task = None
        if request.cancel_event is not None:
            cancel_task = asyncio.ensure_future(request.cancel_event.wait())
            waiters.add(cancel_task)

        timeout = None
        if deadline is not None:
            timeout = max(0.0, deadline - asyncio.get_running_loop().time())

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        if read_task in done:
            data = read_task.result()
            if not data:
                return "eof", ""
            return "line", data.decode("utf-8", errors="replace")

        read_task.cancel()
        if request.cancelled:
            return "cancelled", ""
        return "timeout", ""
