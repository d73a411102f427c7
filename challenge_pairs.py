"""Lookahead scheduler for truth/dare pairs.

The scheduler keeps the pair shown to the current player (``current``) and a pair
prefetched in the background (``next``), so that moving on to the next turn never
waits for the content source. It also remembers the last pair fetched for every
level, which makes switching back to a visited level instant.

One scheduler belongs to one running game. All methods run on the same event loop;
the only concurrency is between a detached background prefetch and the foreground
calls made by the game engine.
"""

import asyncio
import inspect
import logging
import random
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from items import get_available_items, get_used_items_for_level_kind
from loading import LoadingIndicator
from models import ChallengePair, Item, ItemKind, Level, SchedulerState, UsedItems

logger = logging.getLogger(__name__)

INITIAL_LOAD_ERROR = "Failed to load challenges"
NEXT_LOAD_ERROR = "Failed to load next challenges"
LEVEL_LOAD_ERROR = "Failed to load challenges for new level"

FetchItems = Callable[
    [List[Item], Level, ItemKind, UsedItems, List[str]],
    Union[List[Item], Awaitable[List[Item]]],
]


class ChallengeLoadError(RuntimeError):
    """Raised when challenges could not be fetched for the player."""


class ChallengePairScheduler:
    def __init__(
        self,
        fetch_items: FetchItems = get_available_items,
        rng: Optional[random.Random] = None,
        loading: Optional[LoadingIndicator] = None,
    ) -> None:
        """Create an empty scheduler.

        Args:
            fetch_items: Content source returning eligible items for a level and kind.
                May be a plain function or a coroutine function.
            rng: Random generator used for picking items
            loading: Loading indicator driven by foreground operations
        """
        self._fetch_items = fetch_items
        self._rng = rng or random.Random()
        self._loading = loading or LoadingIndicator()
        self._background: Set[asyncio.Task] = set()
        self._epoch = 0
        self._clear()

    def _clear(self) -> None:
        self._current = ChallengePair()
        self._next = ChallengePair()
        self._error: Optional[str] = None
        self._exhausted = False
        self._level = Level.SOFT
        self._pool: List[Item] = []
        self._used_items: UsedItems = {}
        self._excluded_ids: List[str] = []
        self._consumed: Set[str] = set()
        self._level_cache: Dict[Level, ChallengePair] = {}
        self._prefetching: Optional[int] = None
        # Results of fetches started before a bump are thrown away.
        self._epoch += 1

    # Lifecycle

    def initialize(
        self,
        pool: Iterable[Item],
        level: Level,
        used_items: Optional[UsedItems] = None,
        excluded_ids: Iterable[str] = (),
    ) -> None:
        """Start a new game: forget everything and remember the candidate pool."""
        self._loading.cancel()
        self._clear()
        self._pool = list(pool)
        self._level = Level(level)
        self._used_items = dict(used_items or {})
        self._excluded_ids = list(excluded_ids)

    def reset(self) -> None:
        self._loading.cancel()
        self._clear()

    def update_used_items(self, used_items: UsedItems, excluded_ids: Iterable[str] = ()) -> None:
        self._used_items = dict(used_items)
        self._excluded_ids = list(excluded_ids)

    # Queries

    @property
    def current_pair(self) -> ChallengePair:
        return self._current

    @property
    def next_pair(self) -> ChallengePair:
        return self._next

    def has_current_pair(self) -> bool:
        return self._current.is_complete

    def has_next_pair(self) -> bool:
        return self._next.is_complete

    @property
    def is_loading(self) -> bool:
        return self._loading.visible

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_exhausted(self) -> bool:
        return self._exhausted

    @property
    def level(self) -> Level:
        return self._level

    def get_state(self) -> SchedulerState:
        return SchedulerState(
            current=self._current.model_copy(),
            next=self._next.model_copy(),
            loading=self.is_loading,
            error=self._error,
            exhausted=self._exhausted,
        )

    # Fetching

    async def fetch_pair(self, level: Optional[Level] = None) -> ChallengePair:
        """Draw one random truth and one random dare for ``level``.

        Truth and dare are drawn independently, so a pair with a single slot filled
        is a normal result. Only a pair with both slots empty marks the level as
        exhausted. The result is cached for the level either way.
        """
        level = Level(level) if level is not None else self._level
        epoch = self._epoch
        excluded = self._exclusions()

        truths = await self._call_source(level, ItemKind.TRUTH, excluded)
        dares = await self._call_source(level, ItemKind.DARE, excluded)

        if not truths and not dares:
            pair = ChallengePair()
            if epoch == self._epoch and level == self._level:
                self._exhausted = True
                logger.info("No challenges left at level %s", level.value)
        else:
            pair = ChallengePair(truth=self._pick(truths), dare=self._pick(dares))

        if epoch == self._epoch:
            self._level_cache[level] = pair.model_copy()
        return pair

    async def load_initial_pair(self) -> ChallengePair:
        self._loading.start()
        self._error = None
        try:
            pair = await self.fetch_pair()
        except Exception as exc:
            self._error = INITIAL_LOAD_ERROR
            self._loading.fail()
            logger.exception("Initial challenge pair for %s failed", self._level.value)
            raise ChallengeLoadError(INITIAL_LOAD_ERROR) from exc

        self._current = pair
        self._exhausted = pair.is_empty
        if not self._exhausted:
            self.prefetch_next()
        self._loading.stop()
        return pair

    async def load_next_pair(self) -> None:
        """Prefetch ``next``. Failures are recorded, never raised."""
        if self._loading.active or self._prefetching == self._epoch or self._exhausted:
            return

        epoch = self._epoch
        self._prefetching = epoch
        try:
            pair = await self.fetch_pair()
        except Exception as exc:
            if epoch == self._epoch:
                self._error = NEXT_LOAD_ERROR
            logger.warning("Background prefetch failed: %s", exc)
            return
        finally:
            if self._prefetching == epoch:
                self._prefetching = None

        if epoch != self._epoch:
            logger.debug("Dropping prefetched pair for a previous level")
            return
        if pair.is_empty:
            self._exhausted = True
        self._next = self._prune(pair)

    async def wait_for_prefetch(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Consumption

    async def move_to_next(self) -> ChallengePair:
        """Show the prefetched pair. Used when a player skips a challenge."""
        return await self._advance()

    async def handle_wild_card_completion(self) -> ChallengePair:
        return await self._advance()

    async def mark_item_as_used(self, item_id: str, is_wild_card: bool = False) -> None:
        """Take a consumed item out of its pair and refetch ``next`` right away.

        Unlike ``move_to_next``, the refetch is awaited: the following turn
        promotes ``next`` and it has to be ready by then.
        """
        self._consumed.add(item_id)
        if is_wild_card:
            self._next = _without(self._next, item_id)
            if self._next.is_empty:
                self._next = ChallengePair()
        else:
            self._current = _without(self._current, item_id)

        if self._exhausted:
            return
        try:
            pair = await self.fetch_pair()
        except Exception as exc:
            self._error = NEXT_LOAD_ERROR
            logger.warning("Refetch after %s failed: %s", item_id, exc)
            return
        self._next = pair
        if pair.is_empty:
            self._exhausted = True

    async def mark_wild_card_item_as_used(self, item_id: str) -> None:
        await self.mark_item_as_used(item_id, is_wild_card=True)

    async def get_random_from_next_pair(self) -> Optional[Item]:
        """Pick the wild card: a random item of the prefetched pair."""
        self._next = self._prune(self._next)
        if self._next.is_empty:
            if self._exhausted:
                return None
            try:
                pair = await self.fetch_pair()
            except Exception as exc:
                self._error = NEXT_LOAD_ERROR
                logger.warning("Wild card fetch failed: %s", exc)
                return None
            self._next = pair
            if pair.is_empty:
                self._exhausted = True
                return None

        candidates = list(self._next.items())
        if not candidates:
            return None
        return self._rng.choice(candidates)

    async def change_level(self, new_level: Level) -> ChallengePair:
        self._loading.start()
        new_level = Level(new_level)
        logger.info("Level change: %s -> %s", self._level.value, new_level.value)
        self._level = new_level
        self._exhausted = False
        self._error = None
        self._epoch += 1

        try:
            pair = self._cached_pair(new_level)
            if pair is None:
                pair = await self.fetch_pair(new_level)
        except Exception as exc:
            self._error = LEVEL_LOAD_ERROR
            self._loading.fail()
            logger.exception("Challenge pair for level %s failed", new_level.value)
            raise ChallengeLoadError(LEVEL_LOAD_ERROR) from exc

        self._current = pair
        self._next = ChallengePair()
        self._exhausted = pair.is_empty
        if not self._exhausted:
            self.prefetch_next()
        self._loading.stop()
        return pair

    # Internals

    async def _advance(self) -> ChallengePair:
        self._current = self._prune(self._next)
        self._next = ChallengePair()

        if not self._current.is_complete:
            try:
                pair = await self.fetch_pair()
            except Exception as exc:
                self._error = NEXT_LOAD_ERROR
                logger.warning("Refilling the current pair failed: %s", exc)
            else:
                self._current = pair
                self._exhausted = pair.is_empty

        if not self._exhausted:
            self.prefetch_next()
        return self._current

    def prefetch_next(self) -> None:
        """Run ``load_next_pair`` detached from the caller."""
        task = asyncio.create_task(self.load_next_pair())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _cached_pair(self, level: Level) -> Optional[ChallengePair]:
        cached = self._level_cache.get(level)
        # A cached pair holding an item used since then is stale.
        if cached is None or self._prune(cached) != cached:
            return None
        return cached.model_copy()

    async def _call_source(self, level: Level, kind: ItemKind, excluded: List[str]) -> List[Item]:
        result = self._fetch_items(self._pool, level, kind, self._used_items, excluded)
        if inspect.isawaitable(result):
            result = await result
        return list(result)

    def _pick(self, items: List[Item]) -> Optional[Item]:
        return self._rng.choice(items) if items else None

    def _exclusions(self) -> List[str]:
        return [*self._excluded_ids, *self._consumed]

    def _is_eligible(self, item: Item) -> bool:
        return (
            item.id not in self._consumed
            and item.id not in self._excluded_ids
            and item.id not in get_used_items_for_level_kind(self._used_items, item.level, item.kind)
        )

    def _prune(self, pair: ChallengePair) -> ChallengePair:
        return ChallengePair(
            truth=pair.truth if pair.truth and self._is_eligible(pair.truth) else None,
            dare=pair.dare if pair.dare and self._is_eligible(pair.dare) else None,
        )


def _without(pair: ChallengePair, item_id: str) -> ChallengePair:
    if pair.truth is not None and pair.truth.id == item_id:
        return pair.model_copy(update={"truth": None})
    if pair.dare is not None and pair.dare.id == item_id:
        return pair.model_copy(update={"dare": None})
    return pair
