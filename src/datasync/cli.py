"""
Command line front end.

    datasync init
    datasync sync <intervalS> <lookbackUnits> [-replaceAllWithLatest] [-chunking=Hourly]
    datasync load <from> <to> [-replace] [-replaceAllWithLatest] [-chunking=Hourly]
    datasync delete <from> <to>
    datasync recreateviews
    datasync alarmtest

Times are yyyy-MM-dd:HH (UTC). Every command accepts -c/--config <yaml>
and -t/--types a,b,c.
"""
import argparse
import logging
import sys
from logging.config import dictConfig

from core.settings import DEFAULT_CONFIG_PATH, PROJECT_NAME, build_logging_config
from datasync.alerting import create_alerter
from datasync.datehour import Chunking, parse_date_hour
from datasync.errors import SyncError
from datasync.orchestrator import LoadOrchestrator
from datasync.scheduler import SyncScheduler
from datasync.sync_config import load_sync_config

logger = logging.getLogger(__name__)


def parse_types(text: str) -> list[str]:
    types = [t.strip() for t in text.split(",") if t.strip()]
    if not types:
        raise argparse.ArgumentTypeError("expected a comma separated list of types")
    return types


def parse_chunking(text: str) -> Chunking:
    try:
        return Chunking.parse(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", "-config", dest="config", default=str(DEFAULT_CONFIG_PATH),
                        help="The config file to use")
    common.add_argument("-t", "--types", "-types", dest="types", type=parse_types, default=None,
                        help="Comma separated types to work with; all registered types by default")

    parser = argparse.ArgumentParser(prog=PROJECT_NAME, description="Sync time partitioned data files into a warehouse.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", parents=[common], help="Create bookkeeping tables and apply pending DDL")

    sync = commands.add_parser("sync", parents=[common], help="Continuously import new data files")
    sync.add_argument("interval", type=int, help="Seconds between scans; <= 0 scans once")
    sync.add_argument("lookback", type=int, help="Chunks (hours by default) back to look for new files")
    sync.add_argument("-replaceAllWithLatest", "--replace-all-with-latest", dest="replace_all_with_latest",
                      action="store_true",
                      help="WARNING: replaces ALL data of a type with its latest file whenever new files show up")
    sync.add_argument("-chunking", "--chunking", dest="chunking", type=parse_chunking, default=Chunking.HOURLY,
                      help="Disable/Hourly/Daily/Weekly/Monthly, the lookback unit (default Hourly)")

    load = commands.add_parser("load", parents=[common], help="Import data files of a time range")
    load.add_argument("start", type=parse_date_hour, help="yyyy-MM-dd:HH")
    load.add_argument("end", type=parse_date_hour, help="yyyy-MM-dd:HH")
    load.add_argument("-replace", "--replace", dest="replace", action="store_true",
                      help="Replace already imported data of the range")
    load.add_argument("-replaceAllWithLatest", "--replace-all-with-latest", dest="replace_all_with_latest",
                      action="store_true",
                      help="WARNING: replaces ALL data of a type with its latest file if new files are found")
    load.add_argument("-chunking", "--chunking", dest="chunking", type=parse_chunking, default=Chunking.HOURLY,
                      help="Disable/Hourly/Daily/Weekly/Monthly, load and commit in chunks (default Hourly)")

    delete = commands.add_parser("delete", parents=[common], help="Delete imported data of a time range")
    delete.add_argument("start", type=parse_date_hour, help="yyyy-MM-dd:HH")
    delete.add_argument("end", type=parse_date_hour, help="yyyy-MM-dd:HH")

    commands.add_parser("recreateviews", parents=[common], help="Recreate the views of partitioned types")
    commands.add_parser("alarmtest", parents=[common], help="Send a test alert")

    return parser


def run_command(args: argparse.Namespace, orchestrator: LoadOrchestrator) -> None:
    if args.command == "init":
        logger.info("Initialized, types: %s", orchestrator.types)

    elif args.command == "sync":
        SyncScheduler(orchestrator).run(args.interval, args.lookback, args.chunking, args.replace_all_with_latest)

    elif args.command == "load":
        if args.start > args.end:
            raise SyncError("Start of the range is after its end")
        if args.replace_all_with_latest:
            orchestrator.replace_all_with_latest_with_retry(args.start, args.end)
        else:
            orchestrator.load_with_retry(args.start, args.end, args.chunking, args.replace)

    elif args.command == "delete":
        if args.start > args.end:
            raise SyncError("Start of the range is after its end")
        orchestrator.delete(args.start, args.end)

    elif args.command == "recreateviews":
        orchestrator.recreate_views()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    dictConfig(build_logging_config())

    try:
        config = load_sync_config(args.config)

        if args.command == "alarmtest":
            create_alerter(config.alerting).alert("Test alarm, please ignore")
            return 0

        with LoadOrchestrator.from_config(config, requested_types=args.types) as orchestrator:
            run_command(args, orchestrator)

    except SyncError as e:
        logger.error("%s %s failed: %s", PROJECT_NAME, args.command, e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
