# backend/cli.py
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional, TextIO

from diag import close_diagnostic_sink, open_diagnostic_sink
from errors import ConfigError, InputError
from runner import ProbeRun
from settings import load_settings
from version import __version__

log = logging.getLogger("h2scan")

EXIT_OK = 0
EXIT_INPUT = 1
EXIT_CONFIG = 2


def setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s", stream=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="h2scan",
        description="Read host names from stdin and report which of DNS, port 443, TLS, "
        "HTTPS, SPDY/3.1 and HTTP/2 work for each.",
        allow_abbrev=False,
    )
    ap.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-fields", "--fields", action="store_true",
                    help="If set outputs a header line containing field names")
    ap.add_argument("-workers", "--workers", type=int, default=None,
                    help="Number of concurrent workers (default 10)")
    ap.add_argument("-log", "--log", default=None,
                    help="File to write log information to")
    ap.add_argument("--port", type=int, default=None, help="Port to probe (default 443)")
    ap.add_argument("--connect-timeout", type=float, default=None,
                    help="TCP connect timeout in seconds (default 2)")
    ap.add_argument("--timeout", type=float, default=None,
                    help="Timeout in seconds for handshakes and requests, 0 for none (default 30)")
    ap.add_argument("--cafile", default=None, help="CA bundle used to verify servers")
    ap.add_argument("-v", "--verbose", action="count", default=0,
                    help="Increase logging verbosity (-v for info, -vv for debug)")
    return ap


def main(argv: Optional[List[str]] = None, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    stdin = stdin if stdin is not None else sys.stdin
    stdout = stdout if stdout is not None else sys.stdout

    try:
        settings = load_settings(
            workers=args.workers,
            header=args.fields,
            log=args.log,
            port=args.port,
            connect_timeout=args.connect_timeout,
            io_timeout=args.timeout,
            cafile=args.cafile,
            verbose=args.verbose,
        )
        diag = open_diagnostic_sink(settings.log)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG

    try:
        summary = ProbeRun(settings, stdout, diag).run(stdin)
    except InputError as e:
        print(str(e), file=sys.stderr)
        return EXIT_INPUT
    except OSError as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        return EXIT_INPUT
    finally:
        close_diagnostic_sink(diag)

    log.info(
        "probed %d hosts with %d workers in %.1fs",
        summary["written"], summary["workers"], summary["elapsed_seconds"],
    )
    for stage, count in summary["passed"].items():
        log.info("  %-16s %d", stage, count)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
