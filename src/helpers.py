import os
import time
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, as_completed, wait
from contextlib import contextmanager
from itertools import islice
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

DEFAULT_CHUNK_SIZE = 50_000


def default_workers() -> int:
    return os.cpu_count() or 1


def chunked(items: Iterable[Any], size: int) -> Iterator[List[Any]]:
    """Yield consecutive lists of at most `size` items."""
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    iterator = iter(items)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


def split_evenly(items: Sequence[Any], parts: int) -> List[Sequence[Any]]:
    """Split a sequence into at most `parts` contiguous slices of similar size."""
    parts = max(1, min(parts, len(items)))
    step, extra = divmod(len(items), parts)
    slices = []
    start = 0
    for i in range(parts):
        end = start + step + (1 if i < extra else 0)
        slices.append(items[start:end])
        start = end
    return [s for s in slices if len(s)]


def fan_out(
    func: Callable[..., Any],
    chunks: Iterable[Any],
    workers: int,
    initializer: Optional[Callable[..., None]] = None,
    initargs: Tuple = (),
) -> List[Any]:
    """Apply `func` to every chunk, in a process pool when workers > 1.

    Results come back in chunk order. With a single worker everything runs
    in-process, after calling the initializer locally.
    """
    with worker_pool(workers, initializer, initargs) as executor:
        return map_chunks(func, chunks, executor)


@contextmanager
def worker_pool(
    workers: int,
    initializer: Optional[Callable[..., None]] = None,
    initargs: Tuple = (),
) -> Iterator[Optional[ProcessPoolExecutor]]:
    """Process pool shared by several fan-outs, or None when workers <= 1.

    Without a pool the initializer is called in the current process instead.
    """
    if workers <= 1:
        if initializer is not None:
            initializer(*initargs)
        yield None
        return

    with ProcessPoolExecutor(
        max_workers=workers, initializer=initializer, initargs=initargs
    ) as executor:
        yield executor


def map_chunks(
    func: Callable[..., Any],
    chunks: Iterable[Any],
    executor: Optional[ProcessPoolExecutor] = None,
) -> List[Any]:
    if executor is None:
        return [func(chunk) for chunk in chunks]
    return list(executor.map(func, chunks))


def map_chunks_unordered(
    func: Callable[..., Any],
    chunks: Iterable[Any],
    executor: ProcessPoolExecutor,
    max_pending: int,
) -> Iterator[Any]:
    """Yield results as they complete, keeping at most `max_pending` chunks in flight.

    Chunks are pulled from `chunks` lazily, so a streamed input is never
    materialised in full.
    """
    pending = set()
    for chunk in chunks:
        pending.add(executor.submit(func, chunk))
        if len(pending) >= max_pending:
            done, pending = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                yield future.result()
    for future in as_completed(pending):
        yield future.result()


def elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class Reporter:
    """Console progress output, silenced with quiet=True."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def __call__(self, message: str):
        if not self.quiet:
            print(message)

    def timing(self, label: str, start: float):
        self(f"{label}: {elapsed_ms(start)} ms")
