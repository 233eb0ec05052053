"""Async CLI runner for model command-line tools."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
import asyncio
import logging
import os
import time

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


@dataclass
class CliResult:
    text: str
    duration_ms: float
    ok: bool
    error: Optional[str] = None
    stderr: Optional[str] = None
    timed_out: bool = False
    early: bool = False
    returncode: Optional[int] = None


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


class CliClient:
    """Spawns one process per call; process problems come back as ``CliResult`` values."""

    def __init__(self, terminate_grace: float = 2.0, drain_seconds: float = 1.0):
        self.terminate_grace = terminate_grace
        self.drain_seconds = drain_seconds

    async def run(
        self,
        command: List[str],
        prompt: Optional[str] = None,
        prompt_mode: str = "arg",
        timeout_seconds: float = 60,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        completion: Optional[Callable[[str], bool]] = None,
        partial_min_chars: int = 100,
    ) -> CliResult:
        if not command:
            return CliResult(text="", duration_ms=0.0, ok=False, error="missing command")

        cmd = [str(part) for part in command]
        input_data: Optional[bytes] = None
        if prompt is not None:
            if prompt_mode == "stdin":
                input_data = prompt.encode("utf-8")
            elif prompt_mode == "arg":
                cmd.append(prompt)

        run_env = os.environ.copy()
        if env:
            run_env.update({str(k): str(v) for k, v in env.items()})

        start = time.perf_counter()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=run_env,
            )
        except (OSError, ValueError) as exc:
            duration = (time.perf_counter() - start) * 1000
            logger.warning(f"CLI spawn failed for {cmd[0]}: {exc}")
            return CliResult(text="", duration_ms=duration, ok=False, error=f"spawn failed: {exc}")

        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        finished = asyncio.Event()

        async def pump_stdout() -> None:
            while True:
                chunk = await proc.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                stdout_chunks.append(chunk)
                if completion is not None and not finished.is_set():
                    if completion(_decode(stdout_chunks)):
                        finished.set()

        async def pump_stderr() -> None:
            while True:
                chunk = await proc.stderr.read(READ_CHUNK)
                if not chunk:
                    break
                stderr_chunks.append(chunk)

        readers = [asyncio.ensure_future(pump_stdout()), asyncio.ensure_future(pump_stderr())]
        exited = asyncio.ensure_future(proc.wait())
        signalled = asyncio.ensure_future(finished.wait())
        early = False
        timed_out = False
        try:
            if input_data is not None:
                try:
                    proc.stdin.write(input_data)
                    await proc.stdin.drain()
                    proc.stdin.close()
                except (BrokenPipeError, ConnectionResetError):
                    logger.debug(f"{cmd[0]} closed stdin early")

            done, _ = await asyncio.wait(
                {exited, signalled},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if exited in done:
                await asyncio.wait(readers, timeout=self.drain_seconds)
            elif signalled in done:
                early = True
                await self._terminate(proc)
                await asyncio.wait(readers, timeout=self.drain_seconds)
            else:
                timed_out = True
                await self._terminate(proc)
                await asyncio.wait(readers, timeout=self.drain_seconds)
        except asyncio.CancelledError:
            self._kill_now(proc)
            raise
        finally:
            for task in (*readers, exited, signalled):
                if not task.done():
                    task.cancel()

        duration = (time.perf_counter() - start) * 1000
        text = _decode(stdout_chunks).strip()
        stderr = _decode(stderr_chunks).strip() or None

        if early:
            logger.info(f"{cmd[0]} output looked complete after {duration:.0f}ms, process stopped")
            return CliResult(text=text, duration_ms=duration, ok=True, stderr=stderr,
                             early=True, returncode=proc.returncode)
        if timed_out:
            if len(text) >= partial_min_chars:
                logger.warning(f"{cmd[0]} timed out after {timeout_seconds}s, keeping {len(text)} chars of partial output")
                return CliResult(text=text, duration_ms=duration, ok=True, stderr=stderr,
                                 timed_out=True, returncode=proc.returncode)
            logger.warning(f"{cmd[0]} timed out after {timeout_seconds}s with no usable output")
            return CliResult(text=text, duration_ms=duration, ok=False, error="timeout",
                             stderr=stderr, timed_out=True, returncode=proc.returncode)

        ok = proc.returncode == 0
        return CliResult(
            text=text,
            duration_ms=duration,
            ok=ok,
            error=None if ok else f"exit {proc.returncode}",
            stderr=stderr,
            returncode=proc.returncode,
        )

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace)
        except asyncio.TimeoutError:
            self._kill_now(proc)
            await proc.wait()

    @staticmethod
    def _kill_now(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass
