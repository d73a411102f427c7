import asyncio
import random
from typing import List

import pytest

from challenge_pairs import ChallengePairScheduler
from items import get_available_items
from models import Item, ItemKind, Level


def make_item(item_id: str, level: str = "soft", kind: str = "truth", **extra) -> Item:
    extra.setdefault("text", item_id)
    return Item(id=item_id, level=Level(level), kind=ItemKind(kind), **extra)


def ids(pair) -> List[str]:
    return [item.id for item in pair.items()]


class CountingSource:
    """Synchronous content source that records every call."""

    def __init__(self) -> None:
        self.calls = []

    def __call__(self, pool, level, kind, used_items, excluded_ids):
        self.calls.append((Level(level), ItemKind(kind)))
        return get_available_items(pool, level, kind, used_items, excluded_ids)


class BlockingSource(CountingSource):
    """Async source that waits on ``gate`` for the levels listed in ``blocked``."""

    def __init__(self, blocked=None) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.blocked = set(blocked) if blocked is not None else None

    async def __call__(self, pool, level, kind, used_items, excluded_ids):
        result = super().__call__(pool, level, kind, used_items, excluded_ids)
        if self.blocked is None or Level(level) in self.blocked:
            await self.gate.wait()
        return result


class FlakySource(CountingSource):
    """Fails every call after the first ``ok_calls`` calls."""

    def __init__(self, ok_calls: int = 0) -> None:
        super().__init__()
        self.ok_calls = ok_calls

    def __call__(self, pool, level, kind, used_items, excluded_ids):
        result = super().__call__(pool, level, kind, used_items, excluded_ids)
        if len(self.calls) > self.ok_calls:
            raise ConnectionError("content source unavailable")
        return result


@pytest.fixture
def source():
    return CountingSource()


@pytest.fixture
def scheduler(source):
    return ChallengePairScheduler(fetch_items=source, rng=random.Random(7))


@pytest.fixture
def soft_pool():
    return [
        make_item("soft-truth-1", "soft", "truth"),
        make_item("soft-truth-2", "soft", "truth"),
        make_item("soft-truth-3", "soft", "truth"),
        make_item("soft-dare-1", "soft", "dare"),
        make_item("soft-dare-2", "soft", "dare"),
        make_item("soft-dare-3", "soft", "dare"),
    ]
