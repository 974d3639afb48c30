"""Test helpers for release-gate tools."""

from release_gate.command import Command, run

RELEASE_GATE_BIN = "release-gate"


async def run_command(args: list[str], env: dict[str, str] | None = None) -> str:
    return await run(Command([RELEASE_GATE_BIN] + args, env=env))
