"""Shared progress bar utility for meqtl.

Provides a progress iterator over chunk pairs that writes to stdout and
works in terminals as well as notebook cells.
"""

import sys
from collections.abc import Iterator

import progressbar


def progress_iterator(iterable: Iterator, total: int, desc: str = "") -> Iterator:
    """Wrap iterator with progressbar2 progress display.

    The bar is finalized in a try/finally block so that an aborted scan, an
    early break or an exception raised by the caller doesn't leave terminal
    output corrupted.

    Args:
        iterable: Iterator to wrap.
        total: Total number of items (e.g. variant chunks x trait chunks).
        desc: Optional description prefix.

    Yields:
        Items from the wrapped iterator.
    """
    widgets = [
        f"{desc}: " if desc else "",
        progressbar.Counter(),
        f"/{total} ",
        progressbar.Percentage(),
        " ",
        progressbar.Bar(),
        " ",
        progressbar.Timer(),
        " ",
        progressbar.ETA(),
    ]
    bar = progressbar.ProgressBar(max_value=total, widgets=widgets, fd=sys.stdout)
    bar.start()
    try:
        for i, item in enumerate(iterable):
            yield item
            bar.update(min(i + 1, total))
    finally:
        bar.finish()
