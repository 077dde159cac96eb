"""
FILE DESCRIPTION: Command line entry point for the news crawl engine.
KEY FUNCTIONS/CLASSES: main, build_parser, run_crawl, run_single, send_command, show_status

Commands:
    run <domain> [--single]   start a crawl (multi-modal loop, or one worker-pool run with --single)
    resume <domain>           continue a multi-modal crawl from its last checkpoint
    pause|resume-workers|stop <domain>
                              signal a running crawl through its state directory
    status <domain>           print the last published status of a crawl
    init-db                   create the MySQL tables

Exit codes follow the run's exit reason: 0 success, 1 failed, 2 aborted.
"""

import sys
import json
import signal
import logging
import argparse
from pathlib import Path

from crawler.config import RunConfig, load_config, to_snake
from crawler.context import CrawlContext
from crawler.core import CrawlError, ConfigError, StartupError, STATE_DIR, setup_logger
from crawler.metrics import format_summary
from crawler.models import ExitReason
from crawler.storage.memory import MemoryCrawlStore
from crawler.storage.mysql import MySQLCrawlStore, connect
from crawler.telemetry import JsonLinesSink
from crawler.url_utils import host_of, seed_to_url
from crawler.worker import WorkerPool
from multimodal.checkpoint import CheckpointStore
from multimodal.control import ControlChannel, ControlWatcher
from multimodal.orchestrator import MultiModalOrchestrator

logger = logging.getLogger("crawler.main")

CHECKPOINT_FILE = "checkpoint.json"
EVENTS_FILE = "events.jsonl"
LOG_FILE = "crawl.log"


def configure_logging(level, log_file=None):
    """Routes the frontier and multimodal packages through the crawler handlers."""
    base = setup_logger("crawler", log_file=log_file, level=level)
    for name in ("frontier", "multimodal"):
        sibling = logging.getLogger(name)
        sibling.setLevel(level)
        sibling.propagate = False
        for handler in base.handlers:
            if handler not in sibling.handlers:
                sibling.addHandler(handler)
    return base


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="News crawl orchestration engine")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_crawl_options(p):
        p.add_argument("domain", help="Site to crawl (domain or URL)")
        p.add_argument("--config", help="JSON file with run options")
        p.add_argument("--set", action="append", default=[], metavar="KEY=VALUE",
                       help="Override a single option (repeatable), e.g. --set batchSize=200")
        p.add_argument("--workers", type=int)
        p.add_argument("--max-downloads", type=int)
        p.add_argument("--batch-size", type=int)
        p.add_argument("--max-pages", type=int)
        p.add_argument("--max-batches", type=int)
        p.add_argument("--storage", choices=["memory", "mysql"], default="memory")
        p.add_argument("--places", help="Text file with one place/topic name per line for hub gap analysis")
        p.add_argument("--state-dir", default=str(STATE_DIR))
        p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    run = sub.add_parser("run", help="Start a crawl")
    add_crawl_options(run)
    run.add_argument("--single", action="store_true", help="One worker-pool run instead of the multi-modal loop")

    resume = sub.add_parser("resume", help="Resume a multi-modal crawl from its checkpoint")
    add_crawl_options(resume)

    for command, help_text in (("pause", "Pause a running crawl"),
                               ("resume-workers", "Resume a paused crawl"),
                               ("stop", "Stop a running crawl")):
        p = sub.add_parser(command, help=help_text)
        p.add_argument("domain")
        p.add_argument("--state-dir", default=str(STATE_DIR))

    status = sub.add_parser("status", help="Show the status of a crawl")
    status.add_argument("domain")
    status.add_argument("--state-dir", default=str(STATE_DIR))

    sub.add_parser("init-db", help="Create the MySQL tables used by --storage mysql")
    return parser


def state_dir_for(base: str, domain: str) -> Path:
    url = seed_to_url(domain)
    if not url:
        raise StartupError(f"invalid domain '{domain}'")
    return Path(base) / host_of(url)


def parse_set_options(pairs) -> dict:
    options = {}
    for pair in pairs:
        if "=" not in pair:
            raise ConfigError(f"--set expects KEY=VALUE, got '{pair}'")
        key, value = pair.split("=", 1)
        options[to_snake(key.strip())] = value.strip()
    return options


def build_config(args) -> RunConfig:
    """
    FLOW: JSON file -> explicit CLI flags -> --set pairs (last wins) -> load_config
    (which layers these over CRAWL_* environment variables and defaults).
    """
    options = {}
    if args.config:
        try:
            with open(args.config, "r", encoding="utf-8") as fh:
                options.update(json.load(fh))
        except (OSError, ValueError) as e:
            raise ConfigError(f"could not read config file {args.config}: {e}") from e
    flags = {
        "workers": args.workers,
        "max_downloads": args.max_downloads,
        "batch_size": args.batch_size,
        "max_total_pages": args.max_pages,
        "max_total_batches": args.max_batches,
    }
    options.update({k: v for k, v in flags.items() if v is not None})
    options.update(parse_set_options(args.set))
    options["seeds"] = [args.domain]
    options["state_dir"] = args.state_dir
    return load_config(options)


def open_store(kind: str):
    if kind == "memory":
        return MemoryCrawlStore()
    store = MySQLCrawlStore(connect())
    missing = store.missing_tables()
    if missing:
        raise StartupError(f"database not initialized, missing tables: {', '.join(missing)}")
    return store


def load_place_names(path):
    if not path:
        return ()
    with open(path, "r", encoding="utf-8") as fh:
        return tuple(line.strip() for line in fh if line.strip() and not line.startswith("#"))


def install_signal_handlers(ctx: CrawlContext):
    def handle(signum, frame):
        logger.warning(f"Received signal {signum}, stopping crawl")
        ctx.request_abort()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def single_run_status(ctx: CrawlContext, domain: str) -> dict:
    stats = ctx.stats.to_dict()
    stats.pop("queue_depth_history", None)
    return {
        "domain": host_of(seed_to_url(domain)),
        "job_id": ctx.job_id,
        "mode": "single",
        "running": True,
        "paused": ctx.paused,
        "stats": stats,
        "queue": ctx.frontier.get_stats(),
        "held_hosts": ctx.frontier.held_hosts(),
    }


def run_single(ctx: CrawlContext, args, run_dir: Path):
    """One worker-pool run; pause/resume-workers/stop and status go through the state directory."""
    watcher = ControlWatcher(ControlChannel(run_dir),
                             {"pause": ctx.pause, "resume": ctx.resume, "stop": ctx.request_abort},
                             lambda: single_run_status(ctx, args.domain))
    watcher.start()
    try:
        return WorkerPool(ctx).run(ctx.config.seeds)
    finally:
        watcher.stop()


def run_crawl(args, resume: bool = False) -> int:
    config = build_config(args)
    run_dir = state_dir_for(config.state_dir, args.domain)
    configure_logging(getattr(logging, args.log_level), log_file=run_dir / LOG_FILE)

    ctx = CrawlContext(config, store=open_store(args.storage))
    ctx.telemetry.subscribe(JsonLinesSink(run_dir / EVENTS_FILE), replay_history=False)
    ctx.telemetry.start()
    install_signal_handlers(ctx)

    extra = {}
    try:
        if getattr(args, "single", False):
            summary = run_single(ctx, args, run_dir)
        else:
            orchestrator = MultiModalOrchestrator(
                ctx, args.domain,
                checkpoints=CheckpointStore(run_dir / CHECKPOINT_FILE),
                control=ControlChannel(run_dir),
                place_names=load_place_names(args.places),
            )
            summary = orchestrator.run(resume=resume)
            extra["batches"] = orchestrator.batch_number
    finally:
        ctx.close()
        ctx.telemetry.stop()

    print(format_summary(dict(summary.to_dict(), **extra)))
    return summary.reason.exit_code


def send_command(args, command: str) -> int:
    channel = ControlChannel(state_dir_for(args.state_dir, args.domain))
    channel.send(command)
    print(f"Sent '{command}' to {args.domain}")
    return 0


def show_status(args) -> int:
    channel = ControlChannel(state_dir_for(args.state_dir, args.domain))
    status = channel.read_status()
    if status is None:
        print(f"No status published for {args.domain}")
        return 1
    print(json.dumps(status, indent=2, sort_keys=True))
    return 0


def init_db() -> int:
    store = MySQLCrawlStore(connect())
    store.create_tables()
    missing = store.missing_tables()
    if missing:
        print(f"DATABASE_ERROR: tables still missing: {', '.join(missing)}", file=sys.stderr)
        return 1
    print("Database initialized")
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "run":
            return run_crawl(args)
        if args.command == "resume":
            return run_crawl(args, resume=True)
        if args.command == "resume-workers":
            return send_command(args, "resume")
        if args.command in ("pause", "stop"):
            return send_command(args, args.command)
        if args.command == "init-db":
            return init_db()
        return show_status(args)
    except CrawlError as e:
        # Startup problems end the run as `failed` before any worker starts
        print(f"STARTUP_ERROR: {e}", file=sys.stderr)
        return ExitReason.FAILED.exit_code


if __name__ == "__main__":
    sys.exit(main())
