"""
Round-based narrowing and ranking of probe results.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from proxysieve.core.cancel import CancelToken
from proxysieve.core.errors import ProbeCancelledError
from proxysieve.core.models import LatencyResult, ProxyProfile
from proxysieve.testing.latency import LatencyProber
from proxysieve.ui.progress import StatsPrinter

logger = logging.getLogger(__name__)

PrinterFactory = Callable[[int], StatsPrinter]


class RoundController:
    """Re-probes the previous round's survivors for a fixed number of rounds."""

    def __init__(self, prober: LatencyProber, rounds: int = 3,
                 printer_factory: Optional[PrinterFactory] = None):
        self.prober = prober
        self.rounds = rounds
        self.printer_factory = printer_factory

    async def run(self, profiles: List[ProxyProfile], dialers: Dict[str, object],
                  token: CancelToken) -> List[LatencyResult]:
        """Return the successes of the last round that completed.

        A round cut short by the run token is discarded in favour of the
        round before it. When the first round is interrupted, whatever
        finished before the cancel is kept.
        """
        by_tag = {p.tag: p for p in profiles}
        candidates = list(profiles)
        survivors: List[LatencyResult] = []

        for i in range(self.rounds):
            if token.cancelled:
                logger.warning(f"Test ended prematurely: {token.reason}")
                break
            if i > 0:
                candidates = [by_tag[r.tag] for r in survivors]
            if not candidates:
                logger.warning("No working configs left")
                break

            logger.info(f"Round {i + 1}/{self.rounds}: probing {len(candidates)} profiles")
            with token.child() as round_token:
                results = await self._run_round(candidates, dialers, round_token)

            if i > 0 and any(isinstance(r.error, ProbeCancelledError) for r in results):
                logger.warning(f"Round {i + 1}/{self.rounds} interrupted, keeping round {i} results")
                break
            survivors = [r for r in results if r.succeeded]
            logger.info(f"Round {i + 1}/{self.rounds}: {len(survivors)}/{len(results)} succeeded")

        return survivors

    async def _run_round(self, candidates: List[ProxyProfile], dialers: Dict[str, object],
                         token: CancelToken) -> List[LatencyResult]:
        if self.printer_factory is None:
            return await self.prober.probe(candidates, dialers, token)

        printer = self.printer_factory(len(candidates))
        printer_task = asyncio.ensure_future(printer.run())
        try:
            results = await self.prober.probe(candidates, dialers, token, printer.queue)
        except BaseException:
            printer_task.cancel()
            raise
        await printer_task
        return results


def rank_results(results: List[LatencyResult]) -> List[LatencyResult]:
    """Successes only, fastest first; ties keep their input order."""
    return sorted((r for r in results if r.succeeded), key=lambda r: r.delay_ms)


def resolve_uris(ranked: List[LatencyResult], profiles: List[ProxyProfile]) -> List[str]:
    """Map ranked results back to their profiles' connection URIs."""
    by_tag = {p.tag: p.conn_uri for p in profiles}
    uris = []
    for result in ranked:
        uri = by_tag.get(result.tag)
        if uri is None:
            logger.warning(f"No profile for result tag {result.tag}")
            continue
        uris.append(uri)
    return uris
