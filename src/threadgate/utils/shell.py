"""Subprocess helpers."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from threadgate.engine.errors import CommandError

logger = logging.getLogger(__name__)


def _preview(text: str, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


async def run(
    argv: list[str],
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: float = 30.0,
) -> str:
    """
    Run a command without blocking the event loop and return stdout.

    Raises:
        CommandError: non-zero exit (when check) or timeout
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise CommandError(argv, -1, f"timed out after {timeout}s")

    out = stdout.decode("utf-8", errors="replace")
    err = stderr.decode("utf-8", errors="replace")
    if check and proc.returncode != 0:
        logger.debug(
            f"Command failed: {' '.join(argv)} exit={proc.returncode} stderr={_preview(err)}"
        )
        raise CommandError(argv, proc.returncode, err)
    return out
