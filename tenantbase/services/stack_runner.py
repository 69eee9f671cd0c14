"""
Runs the auxiliary stack start/stop commands for a project.

The commands are opaque to this service: they run in the project's
directory under projects_root, and a non-zero exit (or a timeout) is
reported as StackCommandError. A port that was free at allocation time
but is taken when the stack binds it shows up here, as an operational
failure.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from tenantbase.config import Settings, get_settings
from tenantbase.exceptions import StackCommandError

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 4000


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class StackRunner:
    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()

    def project_path(self, directory_name: str) -> Path:
        return Path(self._settings.projects_root) / directory_name

    async def start(self, directory_name: str) -> CommandResult:
        return await self._run(self._settings.stack_start_command, directory_name)

    async def stop(self, directory_name: str) -> CommandResult:
        return await self._run(self._settings.stack_stop_command, directory_name)

    async def _run(self, command: str, directory_name: str) -> CommandResult:
        cwd = self.project_path(directory_name)
        cwd.mkdir(parents=True, exist_ok=True)
        args = shlex.split(command)

        logger.info("Running '%s' in %s", command, cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise StackCommandError(f"Could not run '{command}'", detail=str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self._settings.stack_command_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise StackCommandError(f"'{command}' timed out") from None

        result = CommandResult(
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace")[-MAX_OUTPUT_CHARS:],
            stderr=stderr.decode(errors="replace")[-MAX_OUTPUT_CHARS:],
        )
        if result.returncode != 0:
            logger.warning("'%s' exited with %s", command, result.returncode)
            raise StackCommandError(
                f"'{command}' exited with status {result.returncode}",
                detail=result.stderr or result.stdout,
            )
        return result
