"""CLI entry point for reqtest."""

import argparse
import logging
import re
import sys

from reqtest.__version__ import __version__
from reqtest.listener import RequestListener
from reqtest.sender import (
    PayloadSender,
    SendError,
    DEFAULT_START_STEP,
    DEFAULT_END_STEP,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("reqtest")

_NUMBER = r"(?:\d+(?:\.\d*)?|\.\d+)"
_DURATION_PART = re.compile(rf"({_NUMBER})(ns|us|µs|μs|ms|s|m|h)")
_DURATION = re.compile(rf"(?:{_NUMBER}(?:ns|us|µs|μs|ms|s|m|h))+")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """Parse a duration like '1.5s', '300ms' or '1m30s' into seconds.

    A bare number is taken as seconds.
    """
    text = value.strip()
    sign = 1.0
    if text and text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    if re.fullmatch(_NUMBER, text):
        return sign * float(text)
    if not _DURATION.fullmatch(text):
        raise ValueError(f"invalid duration {value!r}")

    seconds = sum(float(num) * _UNIT_SECONDS[unit] for num, unit in _DURATION_PART.findall(text))
    return sign * seconds


def _duration_arg(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _add_delay_flag(parser, default):
    parser.add_argument(
        "--resp-delay",
        type=_duration_arg,
        default=default,
        metavar="DURATION",
        help="Delay before reading the body and responding in listen mode, e.g. 500ms, 2s, 1m (default: 0)",
    )


def _add_step_flags(parser, start_default, end_default):
    parser.add_argument(
        "--start-step",
        type=int,
        default=start_default,
        metavar="N",
        help=f"Start sending at 2^N bytes (default: {DEFAULT_START_STEP}, i.e. 2 bytes)",
    )
    parser.add_argument(
        "--end-step",
        type=int,
        default=end_default,
        metavar="N",
        help=f"Stop sending once payloads reach 2^N bytes (default: {DEFAULT_END_STEP})",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reqtest",
        description=(
            "Listen for any requests and log the size of their bodies,\n"
            "or send requests of increasing sizes to a listener."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  reqtest listen :8080                          # Log body sizes of incoming requests
  reqtest --resp-delay 5s listen :8080          # Wait 5s before reading each body
  reqtest listen 127.0.0.1:8080 --dashboard     # Interactive dashboard
  reqtest send http://localhost:8080/           # PUT 2 bytes .. 32 MB
  reqtest --start-step 10 --end-step 20 send http://localhost:8080/
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    _add_delay_flag(parser, 0.0)
    _add_step_flags(parser, DEFAULT_START_STEP, DEFAULT_END_STEP)
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", metavar="{listen,send}")

    listen_parser = subparsers.add_parser("listen", help="Listen for requests and log body sizes")
    listen_parser.add_argument("address", help="Address to listen on, e.g. :8080 or 127.0.0.1:8080")
    listen_parser.add_argument("--dashboard", action="store_true", help="Show the interactive dashboard")
    # Also accepted after the subcommand; SUPPRESS keeps the global value otherwise
    _add_delay_flag(listen_parser, argparse.SUPPRESS)

    send_parser = subparsers.add_parser("send", help="Send PUT requests of increasing sizes")
    send_parser.add_argument("url", help="URL to send requests to, e.g. http://localhost:8080/")
    _add_step_flags(send_parser, argparse.SUPPRESS, argparse.SUPPRESS)

    return parser


def listen(args) -> int:
    try:
        listener = RequestListener(args.address, resp_delay=args.resp_delay)
        if args.dashboard:
            listener.run_dashboard()
        else:
            listener.run()
    except (ValueError, OSError) as e:
        logger.error(f"failed to listen: {e}")
        return 1
    return 0


def send(args) -> int:
    try:
        sender = PayloadSender(args.url, start_step=args.start_step, end_step=args.end_step)
        sender.run()
    except SendError as e:
        logger.error(f"failed to send: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, stopping...")
        return 0
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger("reqtest").setLevel(logging.DEBUG)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "listen":
        sys.exit(listen(args))
    sys.exit(send(args))


if __name__ == "__main__":
    main()
