from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from time import perf_counter
from typing import Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')

ProgressCallback = Callable[[int, int], None]

_MEMORY_PATTERNS = (
    "out of memory",
    "std::bad_alloc",
    "cannot allocate memory",
    "failed to allocate",
    "not enough memory",
    "unable to allocate",
    "mmap failed",
)


def _is_memory_error(exc: BaseException) -> bool:
    if isinstance(exc, MemoryError):
        return True
    msg = str(exc).lower()
    return any(pat in msg for pat in _MEMORY_PATTERNS)


def _log_progress(logger: logging.Logger, label: str, completed: int, total: int, start: float) -> None:
    if total == 0:
        return
    elapsed = perf_counter() - start
    rate = completed / elapsed if elapsed > 0 else 0
    eta = (total - completed) / rate if rate > 0 else float('inf')
    logger.info(
        "%s: %d/%d (%.0f%%) elapsed %.1fs ETA %.1fs",
        label,
        completed,
        total,
        100 * completed / total,
        elapsed,
        eta,
    )


def run_tasks_with_adaptive_workers(
    label: str,
    items: Sequence[T],
    func: Callable[[T], R],
    *,
    max_workers: int,
    min_workers: int = 1,
    logger: Optional[logging.Logger] = None,
    show_progress: bool = False,
    progress_callback: Optional[ProgressCallback] = None,
    describe: Callable[[T], str] = str,
) -> List[Optional[R]]:
    """Run tasks in a thread pool, halving the pool when memory pressure is detected.

    Args:
        label: Human-readable label for logging progress.
        items: Ordered collection of task inputs.
        func: Callable executed for each item.
        max_workers: Initial maximum parallel workers.
        min_workers: Lower bound for workers when backing off.
        logger: Optional logger (defaults to module logger).
        show_progress: Emit progress log entries after each task.
        progress_callback: Called as ``callback(completed, total)`` after each
            finished task, from the thread collecting results.
        describe: Formats an item for log messages.

    Returns:
        List of results aligned with ``items`` order. Entries are ``None`` when
        a task failed.
    """

    seq = list(items)
    total = len(seq)
    if total == 0:
        return []

    log = logger or logging.getLogger(__name__)
    min_workers = max(1, min_workers)
    workers = max(min_workers, min(max_workers, total))
    results: List[Optional[R]] = [None] * total
    completed = 0
    start = perf_counter()

    def _finish() -> None:
        if progress_callback is not None:
            progress_callback(completed, total)
        if show_progress:
            _log_progress(log, label, completed, total, start)

    pending = list(range(total))

    while pending:
        current_indices = pending
        pending = []
        mem_failures: List[int] = []
        workers = max(min_workers, min(workers, len(current_indices)))

        log.debug(
            "%s: starting batch with %d worker(s) for %d task(s)",
            label,
            workers,
            len(current_indices),
        )

        with ThreadPoolExecutor(max_workers=workers) as ex:
            future_to_idx = {ex.submit(func, seq[idx]): idx for idx in current_indices}

            for fut in as_completed(future_to_idx):
                idx = future_to_idx[fut]
                try:
                    results[idx] = fut.result()
                except Exception as exc:  # noqa: BLE001 - logged, result stays None
                    if _is_memory_error(exc):
                        mem_failures.append(idx)
                        log.warning(
                            "%s: memory pressure detected (task #%d: %s): %s",
                            label,
                            idx + 1,
                            describe(seq[idx]),
                            exc,
                        )
                        continue
                    log.error(
                        "%s: task #%d (%s) failed: %s",
                        label,
                        idx + 1,
                        describe(seq[idx]),
                        exc,
                        exc_info=True,
                    )
                    results[idx] = None
                completed += 1
                _finish()

        if not mem_failures:
            break

        if workers == min_workers:
            for idx in mem_failures:
                log.error(
                    "%s: memory error even with %d worker(s); giving up on task #%d (%s)",
                    label,
                    workers,
                    idx + 1,
                    describe(seq[idx]),
                )
                completed += 1
                _finish()
            break

        new_workers = max(min_workers, workers // 2)
        log.warning(
            "%s: retrying %d task(s) with %d worker(s) after memory pressure",
            label,
            len(mem_failures),
            new_workers,
        )
        workers = new_workers
        pending = mem_failures

    return results
