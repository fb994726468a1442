from __future__ import annotations

from typing import Callable, Generator, Sequence, Tuple, TypeVar

T = TypeVar("T")


def paginate(
    fetch: Callable[[str | None], Tuple[Sequence[T], str | None]]
) -> Generator[T, None, None]:
    """
    Generic paginator yielding items from a fetch(next_link) function.
    The fetch function must return (items, next_link). The first call receives
    None; if next_link is falsy, pagination stops.
    """
    link: str | None = None
    while True:
        items, next_link = fetch(link)
        for it in items:
            yield it
        if not next_link:
            break
        link = next_link
