"""
Codex CLI backend adapter.

Runs ``codex exec --json`` as a subprocess per turn and translates its
JSON-lines stdout. The thread id from ``thread.started`` is the resume
token; a resumed turn runs ``codex exec resume <thread_id> <prompt>``.
"""
import asyncio
import logging
import os
import signal
from typing import Optional

from ..core.adapter import (
    BackendAdapter,
    RunContext,
    append_file_attachments,
    format_history_prompt,
)
from ..core.constants import TRACE_OUTPUT_PREVIEW_LENGTH
from ..core.exceptions import AdapterError, AuthorizationError, CancellationError
from ..core.schemas import Message, Session
from ..core.translators import CodexEventTranslator, apply_actions
from ..core.translators.codex import parse_json_line

logger = logging.getLogger(__name__)

# Seconds between SIGTERM and SIGKILL on cancel
KILL_GRACE_SECONDS = 1.5

# Codex emits very long JSON lines for command output
STREAM_LIMIT_BYTES = 16 * 1024 * 1024

CODEX_NOT_FOUND_MESSAGE = (
    "Codex CLI is not installed or not found in PATH. "
    "Please install Codex CLI and run `codex auth login`."
)
CODEX_AUTH_MESSAGE = (
    "Codex CLI authentication failed. Please run `codex auth login` and try again."
)
CODEX_STATE_MESSAGE = (
    "Codex CLI session state is inconsistent. Retrying usually fixes it; "
    "if repeated, run `codex auth login`."
)

# stderr lines Codex prints about its local state that are not errors
BENIGN_STDERR_MARKERS = (
    "state db missing rollout path",
    "state db record_discrepancy",
    "codex_core::rollout::list",
)


def build_codex_args(
    prompt: str,
    cwd: str,
    thread_id: Optional[str] = None,
    model: Optional[str] = None,
) -> list[str]:
    """Command-line arguments for one ``codex exec`` turn."""
    args = ["--dangerously-bypass-approvals-and-sandbox", "exec"]
    if thread_id:
        args += ["resume", "--json", "--skip-git-repo-check"]
    else:
        args += ["--json", "--skip-git-repo-check", "-C", cwd]
    if model and model.strip():
        args += ["-m", model.strip()]
    if thread_id:
        args.append(thread_id)
    args.append(prompt)
    return args


def build_exit_error(code: Optional[int], stderr: str) -> AdapterError:
    """Turn a non-zero exit into an adapter error with a useful message."""
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    filtered = [
        line for line in lines
        if not any(marker in line.lower() for marker in BENIGN_STDERR_MARKERS)
    ]
    snippet = " ".join(filtered).strip()[:TRACE_OUTPUT_PREVIEW_LENGTH]
    lower = snippet.lower()

    if "auth" in lower or "login" in lower or "unauthorized" in lower:
        return AuthorizationError(CODEX_AUTH_MESSAGE)
    code_text = code if code is not None else "unknown"
    if snippet:
        return AdapterError(f"Codex CLI exited with code {code_text}: {snippet}")
    if lines:
        return AdapterError(CODEX_STATE_MESSAGE, retryable_hint=True)
    return AdapterError(f"Codex CLI exited with code {code_text}.")


def should_retry_without_resume(error: BaseException) -> bool:
    """Whether a failed resume should be retried on a fresh thread."""
    message = str(error).lower()
    if "state db missing rollout path" in message or "record_discrepancy" in message:
        return True
    return "resume" in message and "thread" in message


class CodexCliAdapter(BackendAdapter):
    """
    Drives the Codex CLI.

    Args:
        executable: Name or path of the codex binary.
        model: Optional model passed with ``-m``.
    """

    name = "codex-cli"

    def __init__(self, executable: str = "codex", model: Optional[str] = None) -> None:
        self._executable = executable
        self._model = model
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._cancelled: set[str] = set()

    async def run(
        self,
        session: Session,
        prompt: str,
        history: list[Message],
        context: RunContext,
    ) -> None:
        cwd = session.working_directory or os.getcwd()
        thread_id = context.resume_token
        text = append_file_attachments(prompt, context.attachments)
        if not thread_id:
            text = format_history_prompt(history, text)

        self._cancelled.discard(session.id)
        logger.info(
            f"Starting codex run for session {session.id} "
            f"(cwd={cwd}, thread={thread_id or 'new'})"
        )
        try:
            await self._execute(
                session.id, cwd, build_codex_args(text, cwd, thread_id, self._model), context
            )
        except AdapterError as e:
            nothing_emitted = not (
                context.failure.has_turn_output or context.failure.has_turn_side_effects
            )
            if not (thread_id and nothing_emitted and should_retry_without_resume(e)):
                raise
            logger.warning(
                f"Codex resume failed for session {session.id}; retrying with a fresh thread"
            )
            context.resume_token = None
            text = format_history_prompt(
                history, append_file_attachments(prompt, context.attachments)
            )
            await self._execute(
                session.id, cwd, build_codex_args(text, cwd, None, self._model), context
            )

    async def _execute(
        self,
        session_id: str,
        cwd: str,
        args: list[str],
        context: RunContext,
    ) -> None:
        translator = CodexEventTranslator(cwd=cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                self._executable,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as e:
            raise AdapterError(CODEX_NOT_FOUND_MESSAGE, retryable_hint=False) from e

        self._processes[session_id] = process
        stderr_task = asyncio.ensure_future(self._collect_stderr(process))
        try:
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace")
                event = parse_json_line(line)
                if event is None:
                    if line.strip():
                        logger.debug(f"Ignoring non-JSON codex output: {line.strip()[:180]}")
                    continue
                await apply_actions(context, translator.translate(event))
            code = await process.wait()
            stderr = await stderr_task
        finally:
            if self._processes.get(session_id) is process:
                del self._processes[session_id]
            if process.returncode is None:
                process.kill()
            stderr_task.cancel()

        if session_id in self._cancelled:
            self._cancelled.discard(session_id)
            raise CancellationError("Codex run cancelled")
        if code != 0:
            raise build_exit_error(code, stderr)

    @staticmethod
    async def _collect_stderr(process: asyncio.subprocess.Process) -> str:
        assert process.stderr is not None
        chunks = []
        async for raw in process.stderr:
            line = raw.decode("utf-8", errors="replace")
            if line.strip():
                logger.warning(f"[codex stderr] {line.strip()}")
            chunks.append(line)
        return "".join(chunks)

    def cancel(self, session_id: str) -> None:
        self._cancelled.add(session_id)
        process = self._processes.get(session_id)
        if process is None or process.returncode is not None:
            return

        logger.info(f"Cancelling codex process for session {session_id}")
        process.send_signal(signal.SIGTERM)

        def kill_if_alive() -> None:
            if self._processes.get(session_id) is process and process.returncode is None:
                process.kill()

        asyncio.get_running_loop().call_later(KILL_GRACE_SECONDS, kill_if_alive)
