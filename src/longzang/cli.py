from __future__ import annotations

import argparse
import logging
import logging.config
import sys
from importlib import metadata
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.table import Table

from .catalog import VolumeStatus
from .claims import filter_volumes, summarize
from .config import ServiceConfig
from .export import STATUS_LABELS, claims_to_csv
from .errors import Unavailable
from .logging_utils import APP_LOGGER, build_uvicorn_log_config
from .web import build_claim_service, create_app

try:
    __version__ = metadata.version("longzang")
except metadata.PackageNotFoundError:
    __version__ = "0.0.0+unknown"

STATUS_STYLES = {
    VolumeStatus.UNCLAIMED: "dim",
    VolumeStatus.CLAIMED: "yellow",
    VolumeStatus.COMPLETED: "green",
}


def _add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"longzang {__version__}",
    )
    parser.add_argument(
        "--data-dir",
        help="Directory for the local claims file and fallback cache (default: $LONGZANG_DATA_DIR or ./data).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging.",
    )


def build_serve_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="longzang serve",
        description="Serve the volume claiming API and scripture proxy.",
    )
    _add_common_flags(ap)
    ap.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host interface for the web server (default: 0.0.0.0).",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=3001,
        help="Port for the web server (default: 3001).",
    )
    return ap


def build_volumes_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="longzang volumes",
        description="Print the reconciled volume list.",
    )
    _add_common_flags(ap)
    ap.add_argument(
        "--status",
        choices=[status.value for status in VolumeStatus],
        help="Only show volumes with this status.",
    )
    ap.add_argument(
        "-s",
        "--search",
        help="Only show volumes whose title or number contains this text.",
    )
    return ap


def build_export_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="longzang export",
        description="Write all claim records as CSV.",
    )
    _add_common_flags(ap)
    ap.add_argument(
        "-o",
        "--output",
        help="Output file (default: stdout).",
    )
    return ap


def _config_from_args(args: argparse.Namespace) -> ServiceConfig:
    config = ServiceConfig.from_env()
    if getattr(args, "data_dir", None):
        config.data_dir = Path(args.data_dir).expanduser().resolve()
    return config


def _configure_cli_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger(APP_LOGGER).setLevel(logging.DEBUG if debug else logging.WARNING)


def _run_serve(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    log_config = build_uvicorn_log_config(debug=args.debug)
    logging.config.dictConfig(log_config)
    app = create_app(config)
    print(f"Serving longzang with data in {config.data_dir}")
    print(f"Claim store: {config.store_url or 'local file'}")
    print("Press Ctrl+C to stop.\n")
    uvicorn.run(app, host=args.host, port=args.port, log_config=log_config)
    return 0


def _run_volumes(args: argparse.Namespace) -> int:
    _configure_cli_logging(args.debug)
    service = build_claim_service(_config_from_args(args))
    volumes = service.list_volumes(force_fresh=True)
    summary = summarize(volumes)
    status = VolumeStatus(args.status) if args.status else None
    volumes = filter_volumes(volumes, status, args.search)

    console = Console()
    table = Table(title="龍藏 認領")
    table.add_column("卷号")
    table.add_column("经名")
    table.add_column("状态")
    table.add_column("认领人")
    table.add_column("预计完成")
    for volume in volumes:
        expected = volume.expected_completion_date
        table.add_row(
            volume.volume_number,
            volume.volume_title,
            f"[{STATUS_STYLES[volume.status]}]{STATUS_LABELS[volume.status]}[/]",
            volume.claimer_name or "-",
            expected.strftime("%Y-%m-%d") if expected else "-",
        )
    console.print(table)
    console.print(
        f"共 {summary['total']} 卷 · 已认领 {summary['claimed']} · "
        f"已完成 {summary['completed']} · 未认领 {summary['unclaimed']}"
    )
    return 0


def _run_export(args: argparse.Namespace) -> int:
    _configure_cli_logging(args.debug)
    service = build_claim_service(_config_from_args(args))
    try:
        records = service.export_claims()
    except Unavailable as exc:
        print(f"Export failed: {exc.detail or exc.message}", file=sys.stderr)
        return 1
    csv_text = claims_to_csv(records)
    if args.output:
        Path(args.output).write_text(csv_text, encoding="utf-8-sig", newline="")
    else:
        sys.stdout.write(csv_text)
    return 0


COMMANDS = {
    "serve": (build_serve_parser, _run_serve),
    "volumes": (build_volumes_parser, _run_volumes),
    "export": (build_export_parser, _run_export),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    if not argv or argv[0] not in COMMANDS:
        print(f"usage: longzang {{{','.join(COMMANDS)}}} [options]", file=sys.stderr)
        return 0 if not argv or argv[0] in {"-h", "--help"} else 2
    build_parser, run = COMMANDS[argv[0]]
    args = build_parser().parse_args(argv[1:])
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
