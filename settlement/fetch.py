from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, NamedTuple

logger = logging.getLogger(__name__)


class BestEffortResult(NamedTuple):
    results: dict[str, Any]
    failures: dict[str, str]

    def warnings(self) -> list[str]:
        return [f"{name}_failed" for name in sorted(self.failures)]


def gather_best_effort(tasks: dict[str, Callable[[], Any]], max_workers: int = 4) -> BestEffortResult:
    """Run independent fetches concurrently; one failing task never discards the rest."""
    results: dict[str, Any] = {}
    failures: dict[str, str] = {}
    if not tasks:
        return BestEffortResult(results, failures)
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(tasks)))) as pool:
        futures = {name: pool.submit(task) for name, task in tasks.items()}
        for name, future in futures.items():
            try:
                results[name] = future.result()
            except Exception as exc:
                logger.warning("fetch %s failed: %s", name, exc)
                failures[name] = str(exc) or exc.__class__.__name__
    return BestEffortResult(results, failures)
