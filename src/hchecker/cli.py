"""Command-line entry point.
"""
import argparse
import cProfile
import logging
import os
import socket
import sys
from dataclasses import replace

import psycopg
from sqlalchemy.exc import SQLAlchemyError

from hchecker import __version__
from hchecker.config import CheckerConfig, checker, parse_store_address
from hchecker.coordinator import Coordinator
from hchecker.dispatcher import Dispatcher
from hchecker.monitor import StoreRestarted, Supervisor
from hchecker.probe import Prober

logger = logging.getLogger(__name__)

PROFILE_PATH = 'hchecker.prof'


def node_name() -> str:
    """``<hostname>#<pid>``, unique per running process.
    """
    return f'{socket.gethostname()}#{os.getpid()}'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='hchecker', description='Cooperative backend health checker')
    parser.add_argument('-v', '--version', action='store_true', help='Print the version and exit')
    parser.add_argument('--method', default=checker.http.method, help='HTTP method')
    parser.add_argument('--uri', default=checker.http.uri, help='HTTP URI')
    parser.add_argument('--host', default=checker.http.host, help='HTTP host header')
    parser.add_argument('--interval', type=int, default=checker.http.interval,
                        help='Check interval (seconds)')
    parser.add_argument('--connect', type=int, default=checker.http.connect_timeout,
                        help='TCP connection timeout (seconds)')
    parser.add_argument('--io', type=int, default=checker.http.io_timeout,
                        help='Socket read/write timeout (seconds)')
    parser.add_argument('--store', default=None,
                        help='Network address of the coordination store (host:port or postgresql:// URL)')
    parser.add_argument('--cpuprofile', action='store_true',
                        help=f'Write CPU profile to "{PROFILE_PATH}" (current directory)')
    parser.add_argument('--dryrun', action='store_true', default=checker.dry_run,
                        help='Enable dry run (or simulation mode). Do not update the store.')
    return parser


def config_from_args(args: argparse.Namespace) -> CheckerConfig:
    """Build the checker configuration from parsed flags and environment defaults.
    """
    config = CheckerConfig(
        http_method=args.method,
        http_uri=args.uri,
        http_host=args.host,
        check_interval_sec=args.interval,
        connect_timeout_sec=args.connect,
        io_timeout_sec=args.io,
        dry_run=args.dryrun,
        host=checker.sql.host,
        port=checker.sql.port,
        dbname=checker.sql.dbname,
        user=checker.sql.user,
        password=checker.sql.passwd,
        appname=checker.sql.appname,
    )
    if args.store:
        config = replace(config, **parse_store_address(args.store))
    return config


def setup_logging(name: str) -> None:
    """Prefix each log line with the process name.
    """
    logging.basicConfig(
        level=logging.INFO,
        format=f'%(asctime)s {name} %(message)s',
        datefmt='%Y/%m/%d %H:%M:%S',
    )


def main(argv: list[str] = None) -> int:
    """Run the health checker until interrupted.

    Returns
        Process exit code
    """
    print(f'hchecker version {__version__}')
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.version:
        return 0

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))
    if config.dry_run:
        print('Enabled dry run mode (simulation)')

    name = node_name()
    setup_logging(name)

    profiler = None
    if args.cpuprofile:
        logger.info(f'CPU profile will be written to "{os.path.join(os.getcwd(), PROFILE_PATH)}"')
        profiler = cProfile.Profile()
        profiler.enable()

    coordinator = None
    try:
        try:
            coordinator = Coordinator(config, name)
            coordinator.verify_connection()
        except SQLAlchemyError as e:
            logger.error(f'Cannot connect to the store: {e}')
            return 1

        prober = Prober(config)
        dispatcher = Dispatcher(coordinator, prober, config)
        try:
            coordinator.subscribe(config.channel, dispatcher.handle)
        except psycopg.Error as e:
            logger.error(f'Cannot subscribe to the "{config.channel}" channel: {e}')
            return 1

        Supervisor(coordinator, dispatcher).run()
    except StoreRestarted:
        logger.error('Store was restarted. Exiting hchecker...')
        return 1
    except KeyboardInterrupt:
        return 0
    finally:
        if profiler is not None:
            profiler.disable()
            profiler.dump_stats(PROFILE_PATH)

    return 0


def run() -> None:
    sys.exit(main())
