"""
Shell builtins: ``exec``, ``shell`` and the ``bash`` namespace.

Commands run through ``/bin/sh`` in the configured workdir via asyncio
subprocesses, so a long command never blocks the event loop.
"""
import asyncio
import contextlib
import logging
import os
import signal
from typing import Any, Dict, Optional, Tuple

from buddyscript.buddy_datatypes import ScriptError
from buddyscript.buddy_interpreter import to_number
from buddyscript.buddy_printer import stringify
from buddyscript.buddy_runtime import BuiltinLibrary

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_MS = 30000


class CommandTimeout(Exception):
    def __init__(self, command: str, timeout_ms):
        super().__init__(f"Command timed out after {timeout_ms}ms: {command}")
        self.command = command


async def run_command(command: str, *, cwd: str, timeout_ms: Optional[float] = None,
                      on_stdout=None) -> Tuple[int, str, str]:
    """Runs ``command`` in a shell and returns ``(code, stdout, stderr)``.

    ``on_stdout`` receives each decoded stdout chunk as it arrives.
    """
    logger.debug("running command in %s: %s", cwd, command)
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )

    async def read_stdout() -> bytes:
        chunks = []
        while True:
            chunk = await proc.stdout.read(4096)
            if not chunk:
                break
            chunks.append(chunk)
            if on_stdout is not None:
                on_stdout(chunk.decode("utf-8", errors="replace"))
        return b"".join(chunks)

    async def collect() -> Tuple[bytes, bytes]:
        out, err = await asyncio.gather(read_stdout(), proc.stderr.read())
        await proc.wait()
        return out, err

    timeout = timeout_ms / 1000 if timeout_ms is not None else None
    try:
        out, err = await asyncio.wait_for(collect(), timeout)
    except asyncio.TimeoutError:
        raise CommandTimeout(command, timeout_ms) from None
    finally:
        if proc.returncode is None:
            # The shell runs in its own session; take its children down with it.
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGKILL)
            await proc.wait()
    return (proc.returncode,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"))


class ShellLib(BuiltinLibrary):
    """Command execution builtins, gated by ``enable_bash``."""

    def dry_run(self, message: str) -> bool:
        if self.config.dry_run:
            self.emit(f"[DRY RUN] {message}")
            return True
        return False

    async def run_until_deadline(self, command: str, on_stdout=None) -> Tuple[int, str, str]:
        """Runs ``command`` in the workdir, bounded by what is left of the script timeout."""
        remaining = self.evaluator.remaining_time()
        try:
            return await run_command(command, cwd=self.config.workdir, on_stdout=on_stdout,
                                     timeout_ms=remaining * 1000 if remaining is not None else None)
        except CommandTimeout:
            raise self.evaluator.timeout_error() from None

    async def _exec(self, command):
        command = stringify(command)
        if self.dry_run(f"Would execute: {command}"):
            return ""
        try:
            code, stdout, stderr = await run_command(command, cwd=self.config.workdir,
                                                     timeout_ms=self.config.timeout or None)
        except (CommandTimeout, OSError) as e:
            raise ScriptError(f"Command failed: {e}") from e
        if code != 0:
            detail = f"\n{stderr.strip()}" if stderr.strip() else ""
            raise ScriptError(f"Command failed: {command}{detail}")
        return stdout

    async def _shell(self, command):
        command = stringify(command)
        if self.dry_run(f"Would execute: {command}"):
            return {"code": 0, "stdout": "", "stderr": ""}
        code, stdout, stderr = await self.run_until_deadline(command)
        return {"code": code, "stdout": stdout, "stderr": stderr}

    async def bash_run(self, command, options=None) -> Dict[str, Any]:
        command = stringify(command)
        opts = options if isinstance(options, dict) else {}
        if self.dry_run(f"bash: {command}"):
            return {"stdout": "", "stderr": "", "code": 0}
        cwd = stringify(opts["cwd"]) if opts.get("cwd") else self.config.workdir
        timeout = to_number(opts["timeout"]) if opts.get("timeout") else DEFAULT_COMMAND_TIMEOUT_MS
        try:
            code, stdout, stderr = await run_command(command, cwd=cwd, timeout_ms=timeout)
        except (CommandTimeout, OSError) as e:
            return {"stdout": "", "stderr": str(e), "code": 1}
        if code == 0:
            return {"stdout": stdout.strip(), "stderr": "", "code": 0}
        return {"stdout": stdout, "stderr": stderr or f"Command failed: {command}", "code": code or 1}

    async def bash_exec(self, command):
        result = await self.bash_run(command)
        if result["code"] != 0:
            raise ScriptError(f"Command failed with code {result['code']}")
        return result["stdout"]

    async def bash_spawn(self, command, args=None) -> Dict[str, Any]:
        arg_list = [stringify(a) for a in args] if isinstance(args, list) else []
        line = " ".join([stringify(command), *arg_list])
        if self.dry_run(f"bash: {line}"):
            return {"stdout": "", "stderr": "", "code": 0}
        on_stdout = self.emit if self.config.verbose else None
        code, stdout, stderr = await self.run_until_deadline(line, on_stdout=on_stdout)
        return {"stdout": stdout, "stderr": stderr, "code": code}

    def namespaces(self) -> Dict[str, Any]:
        return {
            "bash": {
                "run": self.bash_run,
                "exec": self.bash_exec,
                "spawn": self.bash_spawn,
            }
        }
