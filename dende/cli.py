import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .config import Settings, load_config, single_job
from .errors import ConfigError


app = typer.Typer(help="dende: watch files for matching lines and VirusTotal for hashes, notify console/Telegram")


def setup_logging(verbose: int) -> None:
    level = logging.DEBUG if verbose >= 1 else logging.INFO
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("dende").setLevel(level)
    # httpx logs every request at INFO; keep it quiet unless -vv
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose >= 2 else logging.WARNING)
    logging.getLogger("dende").debug("verbosity level: %s", logging.getLevelName(level))


def _settings(
    config: Optional[Path],
    path: Optional[str],
    search: Optional[str],
    regex: Optional[str],
    hashes: Optional[List[str]],
    to: Optional[List[str]],
    recursive: bool,
    read_existing: bool,
    telegram_token: Optional[str],
    virustotal_token: Optional[str],
) -> Settings:
    if config is not None:
        # tokens from CLI/env act as global fallbacks for the YAML jobs
        return load_config(config, telegram_token=telegram_token, virustotal_token=virustotal_token)
    if path is None and not hashes:
        raise ConfigError("--path or --hash required in CLI mode (or use --config)")
    return single_job(
        to=to or [],
        path=path,
        hashes=hashes,
        search=search,
        regex=regex,
        recursive=recursive,
        read_existing=read_existing,
        telegram_token=telegram_token,
        virustotal_token=virustotal_token,
    )


@app.command()
def run(
    config: Optional[Path] = typer.Option(None, "--config", "-C", help="YAML configuration file (multi-job mode)", metavar="FILE"),
    path: Optional[str] = typer.Option(None, "--path", "-P", help="File or directory to watch", metavar="PATH"),
    search: Optional[str] = typer.Option(None, "--search", "-S", help="Literal term to search for"),
    regex: Optional[str] = typer.Option(None, "--regex", "-R", help="Regular expression to search for"),
    hashes: Optional[List[str]] = typer.Option(None, "--hash", "-H", help="Hash to poll on VirusTotal (repeatable)"),
    to: Optional[List[str]] = typer.Option(None, "--to", "-T", help="Recipient 'tg:<CHAT_ID>' or 'console:<TAG>' (repeatable or comma separated)"),
    recursive: bool = typer.Option(False, "--recursive", help="Watch subdirectories"),
    read_existing: bool = typer.Option(True, "--read-existing/--no-read-existing", help="Scan existing content on startup"),
    telegram_token: Optional[str] = typer.Option(None, "--telegram-token", envvar="TELEGRAM_BOT_TOKEN", help="Telegram bot token"),
    virustotal_token: Optional[str] = typer.Option(None, "--virustotal-token", envvar="VIRUSTOTAL_API_KEY", help="VirusTotal API key"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Verbosity (-v, -vv)"),
):
    """Run the monitor until interrupted."""
    from .runtime import run_monitor

    setup_logging(verbose)
    try:
        settings = _settings(config, path, search, regex, hashes, to, recursive, read_existing, telegram_token, virustotal_token)
    except ConfigError as e:
        typer.echo(f"configuration error: {e}", err=True)
        raise typer.Exit(code=2)
    try:
        asyncio.run(run_monitor(settings))
    except KeyboardInterrupt:
        pass


@app.command()
def check(
    config: Path = typer.Argument(..., help="YAML configuration file", metavar="FILE"),
    telegram_token: Optional[str] = typer.Option(None, "--telegram-token", envvar="TELEGRAM_BOT_TOKEN", help="Telegram bot token"),
    virustotal_token: Optional[str] = typer.Option(None, "--virustotal-token", envvar="VIRUSTOTAL_API_KEY", help="VirusTotal API key"),
):
    """Validate a configuration file and print the jobs it defines."""
    try:
        settings = load_config(config, telegram_token=telegram_token, virustotal_token=virustotal_token)
    except ConfigError as e:
        typer.echo(f"configuration error: {e}", err=True)
        raise typer.Exit(code=2)
    rows = []
    for i, job in enumerate(settings.jobs):
        row = {"job": i, "kind": job.kind, "to": job.to}
        if job.kind == "file":
            row.update({"path": job.path, "matcher": str(job.matcher()), "recursive": job.recursive, "read_existing": job.read_existing})
        else:
            row["hashes"] = len(job.hashes)
        rows.append(row)
    typer.echo(json.dumps(rows, indent=2))


def main():
    """Entry point for console_scripts."""
    app()


if __name__ == "__main__":
    main()
