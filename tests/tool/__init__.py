"""Test helpers for bakery tools."""

import asyncio
import subprocess

BAKERY_BIN = "bakery"


async def run_command(args: list[str]) -> tuple[int, str, str]:
    """Run the bakery binary and return its exit code, stdout and stderr."""
    proc = await asyncio.create_subprocess_exec(
        BAKERY_BIN,
        *args,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    out, err = await proc.communicate()
    assert proc.returncode is not None
    return proc.returncode, out.decode(), err.decode()
