"""
Main orchestrator for the sieve pipeline.

Reads raw URIs, deduplicates and parses them, validates the profiles
against the engine, probes them over several rounds and writes the
reachable URIs fastest first.
"""

import asyncio
import logging
from typing import List, Optional

from proxysieve.core.cancel import CancelToken
from proxysieve.core.config import SieveConfig
from proxysieve.core.errors import EngineError
from proxysieve.core.models import ErrorTally, LatencyResult, ProxyProfile
from proxysieve.core.utils import dedupe_uris, default_worker_ceiling, read_lines, write_lines
from proxysieve.engine.base import ProxyEngine
from proxysieve.engine.singbox import SingBoxEngine
from proxysieve.network.http_client import SubscriptionFetcher
from proxysieve.parsers.uri_parser import UniversalParser
from proxysieve.testing.latency import LatencyProber, LatencySettings
from proxysieve.testing.rounds import RoundController, rank_results, resolve_uris
from proxysieve.testing.validator import ProfileValidator, assign_tags
from proxysieve.ui.progress import StatsPrinter


class SieveOrchestrator:
    """Runs one end-to-end sieve over an input file."""

    def __init__(self, config: SieveConfig, engine: Optional[ProxyEngine] = None,
                 show_progress: bool = True):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.show_progress = show_progress

        self.max_workers = config.get("max_workers") or default_worker_ceiling()
        self.parser = UniversalParser()
        self.engine = engine or self._create_engine()
        self.validator = ProfileValidator(self.engine, show_progress=show_progress)
        self.prober = LatencyProber(
            self.engine,
            LatencySettings(
                test_url=config.get("test_url"),
                timeout=config.get("timeout_seconds"),
            ),
            max_workers=self.max_workers,
        )
        self.rounds = RoundController(
            self.prober,
            rounds=config.get("rounds", 3),
            printer_factory=self._make_printer if show_progress else None,
        )

    def _create_engine(self) -> SingBoxEngine:
        return SingBoxEngine(
            binary_path=self.config.get("singbox_path"),
            fallbacks=self.config.get_executable_paths()["sing-box"],
            inbound_base_port=self.config.get("inbound_base_port"),
            startup_timeout=self.config.get("startup_timeout"),
            check_timeout=self.config.get("check_timeout"),
            max_workers=self.max_workers,
        )

    def _make_printer(self, total: int) -> StatsPrinter:
        return StatsPrinter(total, use_rich=self.config.get("use_rich", True))

    def _log_tally(self, title: str, tally: ErrorTally):
        if not tally:
            return
        self.logger.warning(f"{title}:")
        for line in tally.lines():
            self.logger.warning(f"  {line}")

    def download(self) -> int:
        """Fetch the link list's subscriptions into the input file."""
        fetcher = SubscriptionFetcher(timeout=self.config.get("download_timeout", 10))
        return fetcher.download(self.config.get("link_list_file"), self.config.get("input_file"))

    def load_uris(self) -> List[str]:
        path = self.config.get("input_file")
        self.logger.info(f"Loading configurations from {path}")
        return read_lines(path)

    def parse_profiles(self, raw_uris: List[str]) -> List[ProxyProfile]:
        self.logger.info(f"Before dedup: {len(raw_uris)}")
        uris = dedupe_uris(raw_uris, ignore_remark=self.config.get("dedupe_ignore_remark", False))
        self.logger.info(f"After dedup: {len(uris)}")

        profiles, errors = self.parser.parse_all(uris)
        self.logger.info(f"Parsed {len(profiles)}/{len(uris)} profiles")
        self._log_tally("Parsing errors", errors)
        return profiles

    def validate_profiles(self, profiles: List[ProxyProfile],
                          token: Optional[CancelToken] = None) -> List[ProxyProfile]:
        valid, errors = self.validator.validate(profiles, token)
        self._log_tally("Validation errors", errors)
        return valid

    async def probe_profiles(self, profiles: List[ProxyProfile], token: CancelToken) -> List[LatencyResult]:
        loop = asyncio.get_running_loop()
        dialers = await loop.run_in_executor(None, self.engine.start, profiles)
        survivors = await self.rounds.run(profiles, dialers, token)
        return rank_results(survivors)

    def write_output(self, uris: List[str]) -> bool:
        path = self.config.get("output_file")
        try:
            count = write_lines(path, uris)
        except OSError as e:
            self.logger.error(f"Failed to write results to {path}: {e}")
            return False
        self.logger.info(f"Success: {count} reachable configs saved to {path}")
        return True

    async def run(self, token: Optional[CancelToken] = None) -> int:
        """Run the whole pipeline. Returns the process exit code."""
        token = token or CancelToken()

        try:
            raw_uris = self.load_uris()
        except OSError as e:
            self.logger.error(f"Cannot read input file: {e}")
            return 1

        profiles = self.parse_profiles(raw_uris)
        if not profiles:
            self.logger.error("No valid configurations were loaded. Check your source or subscription content.")
            return 1

        loop = asyncio.get_running_loop()
        try:
            with self.engine:
                valid = await loop.run_in_executor(None, self.validate_profiles, profiles, token)
                if token.cancelled:
                    self.logger.warning("Run cancelled during validation")
                    return 1
                if not valid:
                    self.logger.error("No configurations passed engine validation")
                    return 1
                assign_tags(valid)
                ranked = await self.probe_profiles(valid, token)
        except EngineError as e:
            self.logger.error(f"Engine failure: {e}")
            return 1

        if not ranked:
            self.logger.error("No good results")
            return 1

        return 0 if self.write_output(resolve_uris(ranked, valid)) else 1
