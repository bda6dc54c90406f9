import logging
import random
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

NORMAL = "Normal"
RANDOM = "Random"

# Random ordering degenerates for tiny groups, so they always rotate.
MIN_RANDOM_PLAYERS = 4


def shuffle(items: list, rng: random.Random) -> list:
    """Fisher-Yates shuffle in place."""
    m = len(items)
    while m:
        i = rng.randrange(m)
        m -= 1
        items[m], items[i] = items[i], items[m]
    return items


def _next_round(previous: List[str], rng: random.Random) -> List[str]:
    """Draw the next round's authors so nobody repeats their previous position.

    Each collision is repaired by swapping with a random other index. The swap
    cannot create a new collision: position ``j`` receives a value that was not
    ``previous[j]`` (the round is a permutation and ``previous[j]`` sat at ``j``),
    and position ``swap`` receives ``previous[j]``, which differs from
    ``previous[swap]``.
    """
    count = len(previous)
    following = shuffle(list(previous), rng)
    for j in range(count):
        if following[j] == previous[j]:
            swap = rng.randrange(count - 1)
            if swap >= j:
                swap += 1
            following[j], following[swap] = following[swap], following[j]
    if any(a == b for a, b in zip(previous, following)):
        raise RuntimeError("Author repeated on consecutive pages")
    return following


def generate_books(players: Sequence[str], page_count: int, page_order: str = NORMAL,
                   rng: Optional[random.Random] = None) -> Dict[str, List[str]]:
    """Assign an author to every page of every book.

    Returns ``{owner: [author for each page]}``. Slot 0 is always the owner and
    every page index is a permutation of ``players``.
    """
    players = [str(p) for p in players]
    if len(players) < 2:
        raise ValueError("At least two players are needed to generate books")
    if page_count < 1:
        raise ValueError("page_count must be positive")
    rng = rng or random.Random()

    books: Dict[str, List[str]] = {player: [player] for player in players}
    count = len(players)

    if page_order != RANDOM or count < MIN_RANDOM_PLAYERS:
        for i in range(1, page_count):
            for k, owner in enumerate(players):
                books[owner].append(players[(k + i) % count])
    else:
        previous = players
        for _ in range(1, page_count):
            previous = _next_round(previous, rng)
            for k, owner in enumerate(players):
                books[owner].append(previous[k])

    logger.debug("Generated %d books of %d pages (%s order)", count, page_count, page_order)
    return books
