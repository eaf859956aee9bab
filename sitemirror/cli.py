"""sitemirror CLI. Invoked as `sitemirror` when installed with pip install -e ."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import threading
from pathlib import Path

try:
    from tqdm import tqdm
except ImportError:
    tqdm = None

from sitemirror._deps import check_required

MAX_LISTED_FAILURES = 10


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sitemirror",
        description="Mirror a website into a self-contained offline copy.",
    )
    parser.add_argument("urls", nargs="*", metavar="URL", help="Entry URL(s) to mirror")
    parser.add_argument("--config", type=Path, default=None, metavar="FILE", help="JSON config file")
    parser.add_argument("--out-dir", type=Path, default=None, help="Output directory (default: mirror)")
    parser.add_argument(
        "--allow-domain",
        action="append",
        default=None,
        metavar="DOMAIN",
        help="Domain to mirror, subdomains included (repeatable; default: hosts of the entry URLs)",
    )
    parser.add_argument("--deny-domain", action="append", default=None, metavar="DOMAIN", help="Domain never to request")
    parser.add_argument(
        "--deny-path",
        action="append",
        default=None,
        metavar="REGEX",
        help="Skip URLs whose path+query matches REGEX (repeatable)",
    )
    parser.add_argument("--workers", type=int, default=None, metavar="N", help="Workers for every stage")
    for stage in ("request", "fetch", "parse", "write"):
        parser.add_argument(
            f"--{stage}-workers",
            type=int,
            default=None,
            metavar="N",
            help=f"Workers for the {stage} stage",
        )
    parser.add_argument("--delay", type=float, default=None, metavar="SECS", help="Delay between requests per fetch worker")
    parser.add_argument("--timeout", type=float, default=None, metavar="SECS", help="HTTP timeout in seconds")
    parser.add_argument("--retries", type=int, default=None, metavar="N", help="Retries on 429/5xx and network errors (default: 0)")
    parser.add_argument("--cache-dir", type=Path, default=None, metavar="DIR", help="Persist fetched responses here and reuse them")
    parser.add_argument("--run-log", type=Path, default=None, metavar="FILE", help="Append one line per finished job to FILE")
    parser.add_argument("--respect-robots", action="store_true", help="Skip URLs disallowed by robots.txt")
    parser.add_argument(
        "--strict-external",
        action="store_true",
        help="Fail pages that link outside the allowed domains instead of keeping the live link",
    )
    parser.add_argument("--clear", action="store_true", help="Delete the output directory before mirroring")
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bar (e.g. for scripting)")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More log output (-vv for debug)")
    return parser


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING if verbosity <= 0 else logging.INFO if verbosity == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbosity > 1 else logging.WARNING)


def config_from_args(args: argparse.Namespace):
    """MirrorConfig from --config (if any) with command-line options applied on top."""
    from sitemirror.config import FetchSettings, MirrorConfig, load_config
    from sitemirror.engine import Stage
    from sitemirror.rewrite import RewritePolicy

    if args.config is not None:
        config = load_config(args.config)
    else:
        # Interactive default: external links stay live rather than failing the page
        config = MirrorConfig(entry_urls=[], rewrite=RewritePolicy(keep_external=True))

    changes: dict = {}
    if args.urls:
        changes["entry_urls"] = list(args.urls)
    if args.out_dir is not None:
        changes["output_dir"] = args.out_dir
    if args.allow_domain:
        changes["allowed_domains"] = list(args.allow_domain)
    if args.deny_domain:
        changes["disallowed_domains"] = [*config.disallowed_domains, *args.deny_domain]
    if args.deny_path:
        changes["disallowed_paths"] = [*config.disallowed_paths, *args.deny_path]
    if args.cache_dir is not None:
        changes["cache_dir"] = args.cache_dir
    if args.run_log is not None:
        changes["run_log"] = args.run_log
    if args.respect_robots:
        changes["respect_robots"] = True
    if args.strict_external:
        changes["rewrite"] = dataclasses.replace(config.rewrite, keep_external=False)

    concurrency = dict(config.concurrency)
    for stage in Stage:
        n = getattr(args, f"{stage.value}_workers") or args.workers
        if n is not None:
            concurrency[stage] = n
    changes["concurrency"] = concurrency

    fetch = {
        name: value
        for name, value in (("delay", args.delay), ("timeout", args.timeout), ("retries", args.retries))
        if value is not None
    }
    if fetch:
        changes["fetch"] = FetchSettings(**{**dataclasses.asdict(config.fetch), **fetch})
    return dataclasses.replace(config, **changes)


class _ProgressListener:
    """Keeps a tqdm bar in step with engine events; total grows as jobs are discovered."""

    def __init__(self) -> None:
        self._bar = tqdm(total=0, unit="job", desc="Mirroring", file=sys.stderr)
        self._lock = threading.Lock()

    def __call__(self, event) -> None:
        with self._lock:
            if event.kind == "created":
                self._bar.total += 1
                self._bar.refresh()
            elif event.kind in ("completed", "filtered", "failed"):
                self._bar.update(1)

    def close(self) -> None:
        self._bar.close()


def main(argv: list[str] | None = None) -> None:
    check_required()

    from sitemirror.errors import ConfigError
    from sitemirror.pipeline import Mirror
    from sitemirror.storage import clear_output

    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    if tqdm is None and not args.no_progress:
        print("Optional: pip install sitemirror[progress] for a progress bar.", file=sys.stderr)

    try:
        config = config_from_args(args)
    except ConfigError as e:
        parser.error(str(e))
    if not config.entry_urls:
        parser.error("At least one URL is required (on the command line or in --config).")

    if args.clear and clear_output(config.output_dir):
        print(f"Cleared {config.output_dir}", file=sys.stderr)

    mirror = Mirror(config)
    progress = _ProgressListener() if (not args.no_progress and tqdm is not None) else None
    if progress is not None:
        mirror.subscribe(progress)

    try:
        report = mirror.run()
    except KeyboardInterrupt:
        print("\nInterrupted; waiting for in-flight jobs...", file=sys.stderr)
        mirror.shutdown(drain=False)
        report = mirror.engine.join()
    finally:
        if progress is not None:
            progress.close()

    failed = report.failed
    for record in failed[:MAX_LISTED_FAILURES]:
        print(f"  failed [{record.stage.value}] {record.key}: {record.reason}", file=sys.stderr)
    if len(failed) > MAX_LISTED_FAILURES:
        print(f"  ... and {len(failed) - MAX_LISTED_FAILURES} more", file=sys.stderr)
    print(
        f"\nDone. {len(report.completed)} mirrored, {len(report.filtered)} skipped, "
        f"{len(failed)} failed. Output: {config.output_dir}",
        file=sys.stderr,
    )
    if not report.completed:
        sys.exit(1)


if __name__ == "__main__":
    main()
