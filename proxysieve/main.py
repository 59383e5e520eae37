"""
proxysieve - rank proxy subscription links by live latency

Parses vless/trojan/vmess/ss/hysteria2 links, validates them with
sing-box and keeps the ones that answer, fastest first.

Usage:
    python -m proxysieve [--config FILE] [--input FILE] [--output FILE] [--download]

Options:
    --config FILE   YAML settings file
    --input FILE    URI list to test (default: configs.txt)
    --output FILE   where to write reachable URIs (default: results.txt)
    --download      fetch the subscriptions in the link list into the input file first
    -h, --help      show this message
    -v, --version   show the version
"""
import asyncio
import logging
import os
import signal
import sys
from typing import Dict, List, Optional

from colorama import Fore, Style, init

from proxysieve import __version__
from proxysieve.core.cancel import CancelToken
from proxysieve.core.config import SieveConfig
from proxysieve.core.errors import ConfigError
from proxysieve.core.utils import setup_logging
from proxysieve.orchestrator import SieveOrchestrator

# Initialize colorama for Windows
init(autoreset=True)

_VALUE_OPTIONS = {"--config": "config", "--input": "input_file", "--output": "output_file"}

if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


def parse_args(argv: List[str]) -> Dict[str, object]:
    """Parse command line options into a dict."""
    args: Dict[str, object] = {"download": False}
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg in _VALUE_OPTIONS:
            if i + 1 >= len(argv):
                raise ConfigError(f"{arg} requires a value")
            args[_VALUE_OPTIONS[arg]] = argv[i + 1]
            i += 2
            continue
        if arg == "--download":
            args["download"] = True
        elif arg in ("--help", "-h"):
            args["help"] = True
        elif arg in ("--version", "-v"):
            args["version"] = True
        else:
            raise ConfigError(f"unknown option {arg!r}")
        i += 1
    return args


def confirm_redownload(path: str) -> bool:
    """Ask before overwriting an existing download."""
    answer = input(f"Output file '{path}' exists. Redownload? y/n: ").strip().lower()
    if not answer:
        print("Assume no.")
        return False
    return not answer.startswith("n")


def print_banner():
    print(f"{Fore.CYAN}{Style.BRIGHT}proxysieve {__version__}{Style.RESET_ALL}")


def _install_interrupt_handler(token: CancelToken):
    """First Ctrl-C cancels the run token, the second one interrupts."""
    loop = asyncio.get_running_loop()

    def _on_sigint():
        logging.getLogger(__name__).warning("Interrupt received, stopping probes and keeping the last completed round")
        token.cancel()
        loop.remove_signal_handler(signal.SIGINT)

    try:
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    except (NotImplementedError, RuntimeError):
        # Windows event loops have no signal handlers; KeyboardInterrupt still ends the run
        pass


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the sieve."""
    args = parse_args(sys.argv[1:] if argv is None else argv)

    config = SieveConfig(settings_file=args.get("config"))
    for key in ("input_file", "output_file"):
        if key in args:
            config.set(key, args[key])

    setup_logging(log_file=config.get("log_file"))
    logger = logging.getLogger(__name__)
    print_banner()

    errors = config.validate()
    if errors:
        logger.error("Configuration errors found:")
        for error in errors:
            logger.error(f"  - {error}")
        return 1

    orchestrator = SieveOrchestrator(config)

    if args["download"]:
        input_file = config.get("input_file")
        if not os.path.exists(input_file) or confirm_redownload(input_file):
            try:
                orchestrator.download()
            except OSError as e:
                logger.error(f"Download failed: {e}")
                return 1

    token = CancelToken()
    _install_interrupt_handler(token)
    return await orchestrator.run(token)


def cli():
    argv = sys.argv[1:]
    if any(a in ("--help", "-h") for a in argv):
        print(__doc__)
        sys.exit(0)
    if any(a in ("--version", "-v") for a in argv):
        print(f"proxysieve {__version__}")
        sys.exit(0)

    try:
        exit_code = asyncio.run(main(argv))
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        exit_code = 1
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
