"""
docker compose execution for file-addressed stacks.

Runs compose subcommands (pull, down, up -d, restart) against a stack's
compose file, streaming every output line to a callback as it arrives.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from config.settings import AppConfig
from database import ComposeStack

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]


class DockerCommandError(Exception):
    """A docker compose command exited with a non-zero status"""

    def __init__(self, command: str, exit_code: int, stdout: Optional[str], stderr: Optional[str]):
        super().__init__(f"Docker compose command {command} failed with exit code {exit_code}")
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


@dataclass
class CommandResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class ComposeRunner:
    """Drives docker compose for stacks that have a local compose file"""

    def __init__(self, compose_command: Optional[str] = None):
        self.base_command = shlex.split(compose_command or AppConfig.COMPOSE_COMMAND)

    def build_command(self, stack: ComposeStack, subcommand: str) -> List[str]:
        if not stack.config_file:
            raise ValueError(f"Stack {stack.stack_name} has no compose file to run against")
        return [
            *self.base_command,
            '-f', stack.config_file,
            '-p', stack.stack_name,
            *shlex.split(subcommand),
        ]

    async def _pump(self, stream: asyncio.StreamReader, sink: List[str], on_output: Optional[OutputCallback]):
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode('utf-8', errors='replace').rstrip('\r\n')
            sink.append(line)
            if on_output:
                on_output(line)

    async def run(self, stack: ComposeStack, subcommand: str,
                  on_output: Optional[OutputCallback] = None, check: bool = True) -> CommandResult:
        """
        Run one compose subcommand and wait for it to finish.

        Raises:
            DockerCommandError: non-zero exit and check=True
        """
        cmd = self.build_command(stack, subcommand)
        logger.info(f"Running '{' '.join(cmd)}' for stack {stack.stack_name}")

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(Path(stack.config_file).parent),
        )

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        await asyncio.gather(
            self._pump(process.stdout, stdout_lines, on_output),
            self._pump(process.stderr, stderr_lines, on_output),
        )
        exit_code = await process.wait()

        result = CommandResult(
            command=subcommand,
            exit_code=exit_code,
            stdout='\n'.join(stdout_lines),
            stderr='\n'.join(stderr_lines),
        )

        if exit_code != 0:
            logger.error(f"'{subcommand}' for stack {stack.stack_name} exited with {exit_code}")
            if check:
                raise DockerCommandError(subcommand, exit_code, result.stdout, result.stderr)

        return result
