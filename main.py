"""Gridlet - command line driver

Each run:
1. Log in to Enphase Enlighten (scrape + resubmit the login form)
2. Read the current battery profile
3. Fetch a short-range Tomorrow.io forecast, if configured
4. Decide between grid-charging and self-powering
5. Write the new profile if it changed (unless -n)

Normally invoked by cron or similar; --every keeps the process alive and
repeats the run itself.
"""

import argparse
import logging
import signal
import sys
import time

import requests
import schedule

import config
import engine
from deadline import Deadline
from errors import GridletError

logger = logging.getLogger("gridlet")

EXIT_OK = 0
EXIT_LOGIN_FAILED = 1
EXIT_CONFIG = 2
EXIT_ERROR = 3


def log_level_for(verbosity: int, quiet: bool) -> int:
    """Map -v count to a logging level: errors only by default, -vvv for debug."""
    if quiet:
        return logging.CRITICAL + 1
    levels = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]
    return levels[max(0, min(verbosity, len(levels) - 1))]


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="gridlet",
        description="The command line interface to Gridlet.",
        epilog="All options can also be set with GRIDLET_* environment variables "
               "(or a .env file); command line values win.",
    )

    # Core; default None so unset flags don't mask the environment
    ap.add_argument("-n", dest="dry_run", action="store_const", const=True, default=None,
                    help="dry-run only; do not take any action")
    ap.add_argument("-q", dest="log_quiet", action="store_const", const=True, default=None,
                    help="silence all logging regardless of verbosity")
    ap.add_argument("-v", dest="log_level", action="count", default=None,
                    help="increase logging verbosity; can be used multiple times")
    ap.add_argument("--timezone", metavar="<tz>",
                    help="IANA timezone for the schedule, e.g. 'America/Chicago' (default: system)")
    ap.add_argument("--every", metavar="<minutes>", type=float,
                    help="keep running, repeating every <minutes> minutes")

    # Enphase
    ap.add_argument("--enphase_user", metavar="<user>", help="Enphase user name")
    ap.add_argument("--enphase_password", metavar="<password>", help="Enphase password")
    ap.add_argument("--enphase_url_base", metavar="<url>", help="Enlighten base URL")

    # Tomorrow.io
    ap.add_argument("--tomorrow_api_key", metavar="<api_key>", help="Tomorrow.io API key")
    ap.add_argument("--tomorrow_location", metavar="<lat,lng>",
                    help="location for the Tomorrow API, e.g. '29.935,-90.109'")
    return ap


def config_from_cli(args: argparse.Namespace) -> dict:
    cfg = vars(args).copy()
    cfg.pop("every", None)
    return cfg


class Gridlet:
    """Runs the engine once or on a schedule, tracking the in-flight deadline."""

    def __init__(self, cfg: config.GridletConfig):
        self.cfg = cfg
        self._running = True
        self._active_deadline: Deadline | None = None

    def _new_deadline(self) -> Deadline:
        self._active_deadline = Deadline(self.cfg.request_timeout_s)
        return self._active_deadline

    def run_once(self) -> int:
        try:
            result = engine.run(self.cfg, deadline_factory=self._new_deadline)
        except engine.LoginFailed as e:
            logger.error("%s", e)
            return EXIT_LOGIN_FAILED
        except (GridletError, requests.RequestException) as e:
            logger.error("Run failed: %s", e)
            return EXIT_ERROR
        finally:
            self._active_deadline = None

        if result.applied:
            logger.info("Battery switched to %s", result.target.name)
        return EXIT_OK

    def start(self, every_minutes: float) -> int:
        logger.info("Gridlet starting; running every %.1f minutes", every_minutes)
        if self.cfg.dry_run:
            logger.info("*** DRY RUN MODE - battery settings will not be written ***")

        # Run first cycle immediately
        self.run_once()
        schedule.every(every_minutes).minutes.do(self.run_once)

        while self._running:
            schedule.run_pending()
            time.sleep(1)
        schedule.clear()
        return EXIT_OK

    def stop(self):
        self._running = False
        if self._active_deadline is not None:
            self._active_deadline.cancel()
        logger.info("Shutting down")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    every = args.every

    try:
        merged = config.config_merge(
            config.config_default(),
            config.config_from_environment(),
            config_from_cli(args),
        )
        cfg = config.GridletConfig.from_mapping(merged)
    except config.ConfigError as e:
        print(f"gridlet: {e}", file=sys.stderr)
        return EXIT_CONFIG

    logging.basicConfig(
        level=log_level_for(cfg.log_level, cfg.log_quiet),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.debug("Effective config: %r", cfg)

    system = Gridlet(cfg)

    def signal_handler(sig, frame):
        system.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if every is not None:
        if every <= 0:
            print("gridlet: --every must be positive", file=sys.stderr)
            return EXIT_CONFIG
        return system.start(every)
    return system.run_once()


if __name__ == "__main__":
    sys.exit(main())
