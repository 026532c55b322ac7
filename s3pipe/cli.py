"""Command line entry point.

Usage:
  cat backup.tar | s3pipe pipe https://s3.amazonaws.com/backups/backup.tar
  mysqldump accountsdb | s3pipe pipe play.min.io/db/a.sql s3://mirror/db/a.sql
  s3pipe cat play.min.io/db/a.sql --offset 100 --length 50
  s3pipe stat s3://mirror/db/a.sql

With no target, ``pipe`` copies stdin to stdout.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import sys
from typing import BinaryIO, Callable, Sequence
from urllib.parse import urlsplit

from s3pipe import __version__
from s3pipe.common.config import LOG_FORMATS, LOG_LEVELS, Settings, get_settings
from s3pipe.common.logging import setup_logging
from s3pipe.infra.observability.metrics import export_textfile
from s3pipe.infra.storage.client import (
    InvalidArgumentError,
    StorageClient,
    StorageError,
    Target,
)
from s3pipe.infra.storage.s3_client import S3StorageClient
from s3pipe.services.pipe_service import PipeDestination, PipeService

logger = logging.getLogger("s3pipe.cli")

ClientFactory = Callable[[str], StorageClient]


def parse_target_url(url: str, settings: Settings) -> tuple[str, Target]:
    """Split a target URL into the service endpoint and the object it names.

    Accepted forms are ``http(s)://host/bucket/key``, ``host/bucket/key``
    (scheme taken from ``S3_USE_SSL``) and ``s3://bucket/key`` (host taken
    from ``S3_ENDPOINT_URL``).
    """
    raw = url.strip()
    if raw.startswith("s3://"):
        if not settings.S3_ENDPOINT_URL:
            raise InvalidArgumentError(f"S3_ENDPOINT_URL is required for {url}")
        endpoint = settings.S3_ENDPOINT_URL
        path = raw[len("s3://") :]
    else:
        if "://" not in raw:
            raw = f"{settings.default_scheme}://{raw}"
        parts = urlsplit(raw)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise InvalidArgumentError(f"Unsupported target URL: {url}")
        endpoint = f"{parts.scheme}://{parts.netloc}"
        path = parts.path
    bucket, _, key = path.lstrip("/").partition("/")
    if not bucket or not key:
        raise InvalidArgumentError(f"Target URL must name a bucket and a key: {url}")
    return endpoint, Target(bucket=bucket, object_key=key)


def _default_client_factory(settings: Settings) -> ClientFactory:
    clients: dict[str, StorageClient] = {}

    def factory(endpoint: str) -> StorageClient:
        if endpoint not in clients:
            clients[endpoint] = S3StorageClient.from_settings(
                settings, endpoint_url=endpoint
            )
        return clients[endpoint]

    return factory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="s3pipe",
        description="Stream objects to and from S3-compatible storage.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("--endpoint-url", help="Endpoint used for s3:// targets")
    parser.add_argument("--region", help="Region used to sign requests")
    parser.add_argument("--log-level", choices=LOG_LEVELS, type=str.upper)
    parser.add_argument("--log-format", choices=LOG_FORMATS)
    parser.add_argument(
        "--metrics-file",
        help="Write transfer metrics to this file in node-exporter textfile format",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    pipe_cmd = commands.add_parser(
        "pipe",
        help="Write stdin to one or more targets, or to stdout when none is given",
    )
    pipe_cmd.add_argument("targets", nargs="*", metavar="TARGET")

    cat_cmd = commands.add_parser("cat", help="Write an object to stdout")
    cat_cmd.add_argument("target", metavar="TARGET")
    cat_cmd.add_argument("--offset", type=int, default=None, help="First byte to read")
    cat_cmd.add_argument(
        "--length",
        type=int,
        default=-1,
        help="Number of bytes to read (default: to the end)",
    )

    stat_cmd = commands.add_parser("stat", help="Show object size and modification time")
    stat_cmd.add_argument("target", metavar="TARGET")
    return parser


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {}
    if args.endpoint_url:
        overrides["S3_ENDPOINT_URL"] = args.endpoint_url
    if args.region:
        overrides["S3_REGION"] = args.region
    if args.log_level:
        overrides["LOG_LEVEL"] = args.log_level
    if args.log_format:
        overrides["LOG_FORMAT"] = args.log_format
    if args.metrics_file:
        overrides["METRICS_TEXTFILE"] = args.metrics_file
    if not overrides:
        return settings
    return dataclasses.replace(settings, **overrides)


def _release_stdout(stdout: BinaryIO) -> None:
    # After the reader of stdout went away, the interpreter would fail again
    # flushing it at exit; point the descriptor at devnull instead.
    try:
        stdout.flush()
    except BrokenPipeError:
        try:
            fileno = stdout.fileno()
        except (AttributeError, OSError, ValueError):
            return
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, fileno)
        os.close(devnull)


def _pipe(
    args: argparse.Namespace,
    settings: Settings,
    factory: ClientFactory,
    stdin: BinaryIO,
    stdout: BinaryIO,
) -> None:
    destinations = []
    for url in args.targets:
        endpoint, target = parse_target_url(url, settings)
        destinations.append(PipeDestination(factory(endpoint), target, url))
    service = PipeService(stdin, stdout=stdout, chunk_size=settings.COPY_CHUNK_SIZE)
    service.run(destinations)


def _cat(
    args: argparse.Namespace,
    settings: Settings,
    factory: ClientFactory,
    stdout: BinaryIO,
) -> None:
    endpoint, target = parse_target_url(args.target, settings)
    client = factory(endpoint)
    if args.offset is None and args.length < 0:
        stream = client.get(target)
    else:
        stream = client.get_partial(
            target, offset=args.offset or 0, length=args.length
        )
    with stream:
        try:
            for chunk in stream.iter_chunks(settings.COPY_CHUNK_SIZE):
                stdout.write(chunk)
            stdout.flush()
        except BrokenPipeError:
            logger.debug("stdout closed while writing %s", target)


def _stat(
    args: argparse.Namespace,
    settings: Settings,
    factory: ClientFactory,
    stdout: BinaryIO,
) -> None:
    endpoint, target = parse_target_url(args.target, settings)
    stat = factory(endpoint).stat_object(target)
    modified = stat.last_modified.isoformat() if stat.last_modified else "-"
    stdout.write(f"{stat.size_bytes}\t{modified}\t{args.target}\n".encode("utf-8"))
    stdout.flush()


_FAILURE_CONTEXT = {
    "pipe": "Unable to write to one or more targets.",
    "cat": "Unable to read object.",
    "stat": "Unable to stat object.",
}


def main(
    argv: Sequence[str] | None = None,
    *,
    stdin: BinaryIO | None = None,
    stdout: BinaryIO | None = None,
    client_factory: ClientFactory | None = None,
) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = _apply_overrides(get_settings(), args)
    except ValueError as exc:
        print(f"s3pipe: Invalid configuration. ({exc})", file=sys.stderr)
        return 2
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    stdout = stdout if stdout is not None else sys.stdout.buffer
    factory = client_factory or _default_client_factory(settings)

    try:
        if args.command == "pipe":
            source = stdin if stdin is not None else sys.stdin.buffer
            _pipe(args, settings, factory, source, stdout)
        elif args.command == "cat":
            _cat(args, settings, factory, stdout)
        else:
            _stat(args, settings, factory, stdout)
    except (StorageError, OSError) as exc:
        logger.debug("command %s failed", args.command, exc_info=True)
        print(f"s3pipe: {_FAILURE_CONTEXT[args.command]} ({exc})", file=sys.stderr)
        return 1
    finally:
        if settings.METRICS_TEXTFILE:
            export_textfile(settings.METRICS_TEXTFILE)
    _release_stdout(stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())
