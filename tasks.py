"""Invoke tasks for torrentcast development."""

from invoke import Context, task

SOURCES = "src/ tests/ tasks.py"


@task
def lint(ctx: Context) -> None:
    """Run ruff linter."""
    ctx.run(f"uv run ruff check {SOURCES}", pty=True)


@task
def format(ctx: Context, check: bool = False, fix: bool = False) -> None:
    """Run ruff formatter and optionally fix linting issues."""
    if fix:
        ctx.run(f"uv run ruff check --fix {SOURCES}", pty=True)
    check_flag = "--check" if check else ""
    ctx.run(f"uv run ruff format {check_flag} {SOURCES}", pty=True)


@task(help={"keyword": "Only run tests matching this pytest -k expression"})
def test(ctx: Context, keyword: str = "", verbose: bool = True) -> None:
    """Run the test suite (needs the 'test' extra)."""
    flags = ["-v"] if verbose else []
    if keyword:
        flags.append(f"-k {keyword!r}")
    ctx.run(f"uv run --extra test pytest {' '.join(flags)}", pty=True)


@task
def check(ctx: Context) -> None:
    """Run all checks (lint, format check, tests)."""
    lint(ctx)
    format(ctx, check=True)
    test(ctx)


@task(help={"torrent": "Magnet link, info hash, .torrent path or URL", "player": "Player flag without dashes"})
def stream(ctx: Context, torrent: str, player: str = "mpv") -> None:
    """Stream a torrent from the working tree to a local player."""
    ctx.run(f"uv run --extra swarm torrentcast {torrent!r} --{player}", pty=True)
