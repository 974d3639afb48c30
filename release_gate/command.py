"""Library for running the external tools used by the pipeline.

Every external process (docker compose, lftp) is described by a `Command`
and run through `run`, which bounds the number of concurrent subprocesses
and converts failures into the exception type chosen by the caller:

```python
from release_gate import command
from release_gate.exceptions import TransferError

out = await command.run(
    command.Command(
        ["lftp", "--env-password", "-u", "deploy", "-e", "bye", url],
        env={"LFTP_PASSWORD": password},
        exc=TransferError,
    )
)
```

Values passed through `env` are treated as sensitive: they never appear in
the rendered command line, in log records, or in the exception message when
the process echoes them back on its output streams.
"""

import asyncio
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import shlex
import subprocess

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 10
_SEM = asyncio.Semaphore(_CONCURRENCY)
_TIMEOUT = 120.0
_REDACTED = "*****"
_OUTPUT_TAIL_LINES = 40


# No public API
__all__: list[str] = []


def format_path(path: Path) -> str:
    """Format path for debugging."""
    if path.is_absolute() and path.is_relative_to(cwd := Path.cwd()):
        return f"{path.relative_to(cwd)} (abs)"
    return str(path)


def _tail(output: bytes) -> str:
    lines = output.decode("utf-8", errors="replace").rstrip().splitlines()
    if len(lines) > _OUTPUT_TAIL_LINES:
        skipped = len(lines) - _OUTPUT_TAIL_LINES
        lines = [f"... ({skipped} lines skipped)"] + lines[-_OUTPUT_TAIL_LINES:]
    return "\n".join(lines)


@dataclass
class Command:
    """An external process to run."""

    cmd: list[str]
    """Array of command line arguments."""

    cwd: Path | None = None
    """Current working directory."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    env: dict[str, str] | None = field(default=None, repr=False)
    """Extra environment variables for the subprocess, never logged."""

    timeout: float = _TIMEOUT
    """Seconds to wait for the command before failing."""

    @property
    def string(self) -> str:
        """Render the command as a single shell string."""
        return shlex.join(self.cmd)

    def __str__(self) -> str:
        """Render as a debug string."""
        if self.cwd:
            return f"({format_path(self.cwd)}) {self.string}"
        return self.string

    def redact(self, text: str) -> str:
        """Mask the values of the extra environment variables in text."""
        for value in (self.env or {}).values():
            if value:
                text = text.replace(value, _REDACTED)
        return text

    def error(
        self, message: str, out: bytes = b"", err: bytes = b""
    ) -> CommandException:
        """Build the exception for a failed run, with the tail of its output."""
        lines = [f"Command '{self}' {message}"]
        lines.extend(_tail(stream) for stream in (out, err) if stream.strip())
        return self.exc(self.redact("\n".join(lines)))

    async def run(self) -> bytes:
        """Run the command, returning stdout."""
        _LOGGER.debug("Running command: %s", self)
        proc = await asyncio.create_subprocess_shell(
            self.string,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.cwd,
            env={**os.environ, **(self.env or {})},
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError as timeout_err:
            proc.kill()
            await proc.wait()
            raise self.error(f"timed out after {self.timeout:g}s") from timeout_err
        if proc.returncode:
            exc = self.error(f"failed with return code {proc.returncode}", out, err)
            _LOGGER.debug("%s", exc)
            raise exc
        return out


async def run(cmd: Command) -> str:
    """Run the specified command and return stdout."""
    async with _SEM:
        out = await cmd.run()
    return out.decode("utf-8") if out else ""
