"""External CLI fallback for drivers without a native adapter.

Statements are written to a temporary file and run through a
DBeaver-compatible command line that exports the result set as CSV.
"""

import asyncio
import csv
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from ...constants import CLI_TERMINATE_GRACE
from ...models import ConnectionDescriptor, QueryResult
from ..logging import QueryTimer, log_query_execution

logger = logging.getLogger(__name__)


class CliFallbackError(Exception):
    """Raised when the fallback CLI is unavailable or the run failed."""


class CliFallbackExecutor:
    """Runs one statement per subprocess with a hard timeout."""

    def __init__(self, executable: Optional[str], timeout: float = 30.0):
        self.executable = executable
        self.timeout = timeout

    def resolve_executable(self) -> str:
        """Return the absolute CLI path.

        Raises:
            CliFallbackError: If no executable is configured or found on PATH
        """
        if not self.executable:
            raise CliFallbackError("no CLI executable configured (set DBGATEWAY_CLI_PATH)")
        resolved = shutil.which(self.executable)
        if resolved is None:
            raise CliFallbackError(f"CLI executable not found: {self.executable}")
        return resolved

    async def execute(self, descriptor: ConnectionDescriptor, query: str) -> QueryResult:
        """Execute ``query`` through the CLI and parse its CSV output.

        Raises:
            CliFallbackError: On missing executable, non-zero exit, timeout
                or unreadable output
        """
        executable = self.resolve_executable()
        timer = QueryTimer()

        with tempfile.TemporaryDirectory(prefix="dbgateway_") as workdir:
            sql_file = Path(workdir) / "query.sql"
            output_file = Path(workdir) / "output.csv"
            sql_file.write_text(query, encoding="utf-8")

            args = [
                "-nosplash",
                "-application", "org.jkiss.dbeaver.core.application",
                "-con", descriptor.id,
                "-f", str(sql_file),
                "-o", str(output_file),
                "-of", "csv",
                "-quit",
            ]

            with timer:
                await self._run(executable, args)

            if not output_file.exists():
                raise CliFallbackError("CLI run produced no output file")
            result = self._parse_csv(output_file)

        log_query_execution(
            query=query,
            dsn=f"cli://{descriptor.id}",
            success=True,
            row_count=result.row_count,
            duration=timer.duration,
        )
        result.execution_time = timer.duration_ms
        result.query = query
        return result

    async def _run(self, executable: str, args: list[str]) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CliFallbackError(f"failed to start {executable}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            await self._terminate(process)
            raise CliFallbackError(f"CLI timed out after {self.timeout}s") from e
        except BaseException:
            # Cancelled by the caller: do not leave the child running
            await self._terminate(process)
            raise

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[:500] if stderr else ""
            raise CliFallbackError(
                f"CLI exited with code {process.returncode}" + (f": {detail}" if detail else "")
            )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=CLI_TERMINATE_GRACE)
        except asyncio.TimeoutError:
            logger.warning(f"CLI process {process.pid} ignored SIGTERM, killing")
            process.kill()
            await process.wait()

    def _parse_csv(self, path: Path) -> QueryResult:
        try:
            with path.open(newline="", encoding="utf-8") as handle:
                reader = csv.reader(handle)
                columns = next(reader, [])
                rows = [list(row) for row in reader]
        except (OSError, csv.Error, UnicodeDecodeError) as e:
            raise CliFallbackError(f"unreadable CLI output: {e}") from e
        return QueryResult(columns=columns, rows=rows, row_count=len(rows))
