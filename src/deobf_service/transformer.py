import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

from deobf_service.config import Settings
from deobf_service.errors import ExternalToolError, ExternalToolTimeout

logger = logging.getLogger(__name__)


def _decode(raw: bytes | None) -> str:
    return raw.decode("utf-8", errors="replace") if raw else ""


class ExternalTransformer:
    """Runs the deobfuscator binary as ``[runtime] executable flags -i IN -o OUT``.

    The command is always an argument vector, never a shell string, because
    the input path embeds a user-supplied file name.
    """

    def __init__(
        self,
        executable: str,
        runtime: str | None = None,
        flags: Sequence[str] = ("-dev",),
        timeout_sec: float = 120,
    ) -> None:
        self.executable = executable
        self.runtime = runtime or None
        self.flags = list(flags)
        self.timeout_sec = timeout_sec

    @classmethod
    def from_settings(cls, cfg: Settings) -> "ExternalTransformer":
        return cls(
            executable=cfg.transformer_path,
            runtime=cfg.transformer_runtime,
            flags=cfg.flag_list,
            timeout_sec=cfg.transform_timeout_sec,
        )

    def build_command(self, input_path: str, output_path: str) -> list[str]:
        cmd = [self.runtime] if self.runtime else []
        cmd += [self.executable, *self.flags, "-i", input_path, "-o", output_path]
        return cmd

    async def invoke(self, input_path: str, output_path: str, timeout: float | None = None) -> str:
        limit = self.timeout_sec if timeout is None else timeout
        cmd = self.build_command(input_path, output_path)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExternalToolError(f"cannot start {cmd[0]}: {exc}") from exc

        readers = asyncio.gather(proc.stdout.read(), proc.stderr.read())

        async def finish() -> tuple[bytes, bytes]:
            output = await asyncio.shield(readers)
            await proc.wait()
            return output

        try:
            stdout_b, stderr_b = await asyncio.wait_for(finish(), timeout=limit)
        except asyncio.TimeoutError as exc:
            await self._kill(proc)
            _, stderr_b = await self._drain(readers)
            raise ExternalToolTimeout(f"tool timed out after {limit}s", stderr=_decode(stderr_b)) from exc
        except asyncio.CancelledError:
            readers.cancel()
            await self._kill(proc)
            raise

        stdout = _decode(stdout_b)
        stderr = _decode(stderr_b)
        if proc.returncode != 0:
            raise ExternalToolError(
                f"tool exited with code {proc.returncode}: {stderr.strip()[:500]}",
                stderr=stderr,
                returncode=proc.returncode,
            )
        if not Path(output_path).is_file():
            raise ExternalToolError("tool reported success but wrote no output", stderr=stderr, returncode=0)

        if stdout:
            logger.debug("Tool stdout: %s", stdout)
        if stderr:
            logger.debug("Tool stderr: %s", stderr)
        return "\n".join(part for part in (stdout.strip(), stderr.strip()) if part)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()

    @staticmethod
    async def _drain(readers: "asyncio.Future[list[bytes]]", grace: float = 5.0) -> tuple[bytes, bytes]:
        # a killed tool closes its pipes, unless a child of it still holds them
        try:
            stdout_b, stderr_b = await asyncio.wait_for(readers, timeout=grace)
        except asyncio.TimeoutError:
            return b"", b""
        return stdout_b, stderr_b
