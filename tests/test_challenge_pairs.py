import asyncio
import random

import pytest

from challenge_pairs import (
    INITIAL_LOAD_ERROR,
    LEVEL_LOAD_ERROR,
    NEXT_LOAD_ERROR,
    ChallengeLoadError,
    ChallengePairScheduler,
)
from conftest import BlockingSource, FlakySource, ids, make_item
from models import ChallengePair, Level


async def test_fetch_pair_allows_truth_only():
    scheduler = ChallengePairScheduler()
    scheduler.initialize([make_item("t1"), make_item("t2")], Level.SOFT)

    pair = await scheduler.fetch_pair(Level.SOFT)

    assert pair.truth is not None
    assert pair.dare is None
    assert not scheduler.is_exhausted


async def test_fetch_pair_allows_dare_only():
    scheduler = ChallengePairScheduler()
    scheduler.initialize([make_item("d1", kind="dare")], Level.SOFT)

    pair = await scheduler.fetch_pair()

    assert pair.truth is None
    assert pair.dare.id == "d1"
    assert not scheduler.is_exhausted


async def test_fetch_pair_marks_exhausted_when_nothing_left():
    scheduler = ChallengePairScheduler()
    scheduler.initialize([make_item("t1", level="mild")], Level.SOFT)

    pair = await scheduler.fetch_pair(Level.SOFT)

    assert pair == ChallengePair()
    assert scheduler.is_exhausted


async def test_fetch_pair_respects_used_and_excluded_ids(scheduler, soft_pool):
    used = {"soft": {"truth": ["soft-truth-1"], "dare": ["soft-dare-1"]}}
    scheduler.initialize(soft_pool, Level.SOFT, used, excluded_ids=["soft-truth-2", "soft-dare-2"])

    for _ in range(10):
        pair = await scheduler.fetch_pair()
        assert ids(pair) == ["soft-truth-3", "soft-dare-3"]


async def test_fetch_pair_accepts_async_source(soft_pool):
    source = BlockingSource()
    source.gate.set()
    scheduler = ChallengePairScheduler(fetch_items=source)
    scheduler.initialize(soft_pool, Level.SOFT)

    pair = await scheduler.fetch_pair()

    assert pair.is_complete
    assert len(source.calls) == 2


async def test_load_initial_pair_full_pair():
    scheduler = ChallengePairScheduler()
    scheduler.initialize([make_item("soft-truth-1"), make_item("soft-dare-1", kind="dare")], Level.SOFT, {}, [])

    pair = await scheduler.load_initial_pair()

    assert pair.truth.id == "soft-truth-1"
    assert pair.dare.id == "soft-dare-1"
    assert scheduler.current_pair == pair
    assert scheduler.has_current_pair()
    assert not scheduler.is_exhausted
    assert scheduler.error is None


async def test_load_initial_pair_partial_pair():
    scheduler = ChallengePairScheduler()
    scheduler.initialize([make_item("soft-truth-1")], Level.SOFT)

    await scheduler.load_initial_pair()

    assert scheduler.current_pair.truth.id == "soft-truth-1"
    assert scheduler.current_pair.dare is None
    assert not scheduler.has_current_pair()
    assert not scheduler.is_exhausted


async def test_load_initial_pair_empty_pool(scheduler, source):
    scheduler.initialize([], Level.SOFT)

    pair = await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()

    assert pair == ChallengePair()
    assert scheduler.is_exhausted
    # no background prefetch once exhausted
    assert len(source.calls) == 2


async def test_load_initial_pair_prefetches_next(scheduler, soft_pool):
    scheduler.initialize(soft_pool, Level.SOFT)

    await scheduler.load_initial_pair()
    assert scheduler.next_pair.is_empty
    await scheduler.wait_for_prefetch()

    assert scheduler.has_next_pair()


async def test_load_initial_pair_failure_is_raised_and_recorded(soft_pool):
    scheduler = ChallengePairScheduler(fetch_items=FlakySource(ok_calls=0))
    scheduler.initialize(soft_pool, Level.SOFT)

    with pytest.raises(ChallengeLoadError) as excinfo:
        await scheduler.load_initial_pair()

    assert str(excinfo.value) == INITIAL_LOAD_ERROR
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert scheduler.error == INITIAL_LOAD_ERROR
    assert not scheduler.is_loading


async def test_background_failure_is_swallowed(soft_pool):
    scheduler = ChallengePairScheduler(fetch_items=FlakySource(ok_calls=2))
    scheduler.initialize(soft_pool, Level.SOFT)

    await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()

    assert scheduler.error == NEXT_LOAD_ERROR
    assert scheduler.next_pair.is_empty
    assert scheduler.current_pair.is_complete


async def test_load_next_pair_runs_once_while_in_flight(soft_pool):
    source = BlockingSource()
    scheduler = ChallengePairScheduler(fetch_items=source)
    scheduler.initialize(soft_pool, Level.SOFT)

    first = asyncio.create_task(scheduler.load_next_pair())
    second = asyncio.create_task(scheduler.load_next_pair())
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert second.done()
    assert len(source.calls) == 1

    source.gate.set()
    await asyncio.gather(first, second)

    # one truth lookup and one dare lookup: a single pair fetch
    assert len(source.calls) == 2
    assert scheduler.next_pair.is_complete


async def test_load_next_pair_noop_when_exhausted(scheduler, source):
    scheduler.initialize([], Level.SOFT)
    await scheduler.load_initial_pair()
    calls = len(source.calls)

    await scheduler.load_next_pair()

    assert len(source.calls) == calls


async def test_mark_item_as_used_clears_only_that_slot():
    scheduler = ChallengePairScheduler()
    scheduler.initialize(
        [make_item("soft-truth-1"), make_item("soft-dare-1", kind="dare"), make_item("soft-dare-2", kind="dare")],
        Level.SOFT,
    )
    await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()

    await scheduler.mark_item_as_used("soft-truth-1", False)

    assert scheduler.current_pair.truth is None
    assert scheduler.current_pair.dare is not None
    assert scheduler.next_pair.truth is None
    for _ in range(5):
        await scheduler.move_to_next()
        await scheduler.wait_for_prefetch()
        assert "soft-truth-1" not in ids(scheduler.current_pair) + ids(scheduler.next_pair)


async def test_mark_wild_card_item_removes_from_next():
    scheduler = ChallengePairScheduler()
    scheduler.initialize([make_item("t1"), make_item("d1", kind="dare")], Level.SOFT)
    await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()
    assert ids(scheduler.next_pair) == ["t1", "d1"]

    await scheduler.mark_wild_card_item_as_used("t1")

    assert scheduler.next_pair.truth is None
    assert scheduler.next_pair.dare.id == "d1"
    assert not scheduler.has_next_pair()
    assert ids(scheduler.current_pair) == ["t1", "d1"]


async def test_mark_wild_card_item_exhausts_level():
    scheduler = ChallengePairScheduler()
    scheduler.initialize([make_item("t1")], Level.SOFT)
    await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()

    await scheduler.mark_wild_card_item_as_used("t1")

    assert scheduler.next_pair == ChallengePair()
    assert not scheduler.has_next_pair()
    assert scheduler.is_exhausted


async def test_consumed_items_never_resurface(scheduler, soft_pool):
    scheduler.initialize(soft_pool, Level.SOFT)
    await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()

    consumed = []
    for step in range(6):
        if step % 2:
            item = await scheduler.get_random_from_next_pair()
            if item is None:
                break
            consumed.append(item.id)
            await scheduler.mark_wild_card_item_as_used(item.id)
            await scheduler.handle_wild_card_completion()
        else:
            item = next(scheduler.current_pair.items(), None)
            if item is None:
                break
            consumed.append(item.id)
            await scheduler.mark_item_as_used(item.id)
            await scheduler.move_to_next()
        await scheduler.wait_for_prefetch()

        visible = ids(scheduler.current_pair) + ids(scheduler.next_pair)
        assert not set(consumed) & set(visible)


async def test_move_to_next_promotes_prefetched_pair(scheduler, soft_pool, source):
    scheduler.initialize(soft_pool, Level.SOFT)
    await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()
    prefetched = scheduler.next_pair
    calls = len(source.calls)

    current = await scheduler.move_to_next()

    assert current == prefetched
    assert scheduler.next_pair.is_empty
    assert len(source.calls) == calls


async def test_move_to_next_refills_incomplete_pair(scheduler, soft_pool, source):
    scheduler.initialize(soft_pool, Level.SOFT)
    await scheduler.load_initial_pair()
    calls = len(source.calls)

    # prefetch has not run yet, so next is empty
    current = await scheduler.move_to_next()

    assert current.is_complete
    assert len(source.calls) == calls + 2


async def test_move_to_next_drops_items_used_since_prefetch(scheduler, soft_pool):
    scheduler.initialize(soft_pool, Level.SOFT)
    await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()
    skipped = scheduler.next_pair.truth
    scheduler.update_used_items({"soft": {"truth": [skipped.id]}})

    current = await scheduler.move_to_next()

    assert current.truth is not None
    assert current.truth.id != skipped.id


async def test_wild_card_completion_matches_move_to_next(soft_pool):
    skip = ChallengePairScheduler(rng=random.Random(1))
    wild = ChallengePairScheduler(rng=random.Random(1))
    for scheduler in (skip, wild):
        scheduler.initialize(soft_pool, Level.SOFT)
        await scheduler.load_initial_pair()
        await scheduler.wait_for_prefetch()

    after_skip = await skip.move_to_next()
    after_wild = await wild.handle_wild_card_completion()

    assert after_skip == after_wild
    assert skip.get_state() == wild.get_state()


async def test_random_from_next_pair_uses_prefetched_items(scheduler, soft_pool):
    scheduler.initialize(soft_pool, Level.SOFT)
    await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()

    item = await scheduler.get_random_from_next_pair()

    assert item.id in ids(scheduler.next_pair)


async def test_random_from_next_pair_fetches_when_empty(scheduler, soft_pool):
    scheduler.initialize(soft_pool, Level.SOFT)

    item = await scheduler.get_random_from_next_pair()

    assert item is not None
    assert item.id in ids(scheduler.next_pair)


async def test_random_from_next_pair_none_when_exhausted(scheduler):
    scheduler.initialize([], Level.SOFT)
    await scheduler.load_initial_pair()

    assert await scheduler.get_random_from_next_pair() is None


async def test_random_from_next_pair_none_on_failure(soft_pool):
    scheduler = ChallengePairScheduler(fetch_items=FlakySource(ok_calls=0))
    scheduler.initialize(soft_pool, Level.SOFT)

    assert await scheduler.get_random_from_next_pair() is None
    assert scheduler.error == NEXT_LOAD_ERROR


async def test_change_level_round_trip_uses_cache(scheduler, source):
    scheduler.initialize(
        [
            make_item("t1", "soft", "truth"),
            make_item("d1", "soft", "dare"),
            make_item("t2", "mild", "truth"),
            make_item("d2", "mild", "dare"),
        ],
        Level.SOFT,
    )
    await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()

    mild = await scheduler.change_level(Level.MILD)
    await scheduler.wait_for_prefetch()
    assert ids(mild) == ["t2", "d2"]
    assert scheduler.level == Level.MILD

    calls = len(source.calls)
    soft = await scheduler.change_level(Level.SOFT)

    assert ids(soft) == ["t1", "d1"]
    assert len(source.calls) == calls
    assert scheduler.next_pair.is_empty


async def test_change_level_refetches_stale_cache(scheduler, soft_pool, source):
    scheduler.initialize(soft_pool + [make_item("m1", "mild")], Level.SOFT)
    cached = await scheduler.fetch_pair(Level.SOFT)
    await scheduler.change_level(Level.MILD)
    await scheduler.wait_for_prefetch()
    scheduler.update_used_items({"soft": {"truth": [cached.truth.id]}})
    calls = len(source.calls)

    soft = await scheduler.change_level(Level.SOFT)

    assert len(source.calls) == calls + 2
    assert soft.truth.id != cached.truth.id


async def test_change_level_clears_exhaustion(scheduler):
    scheduler.initialize([make_item("t2", "mild"), make_item("d2", "mild", "dare")], Level.SOFT)
    await scheduler.load_initial_pair()
    assert scheduler.is_exhausted

    pair = await scheduler.change_level(Level.MILD)

    assert pair.is_complete
    assert not scheduler.is_exhausted
    assert scheduler.error is None


async def test_change_level_to_exhausted_level_from_cache(scheduler, source):
    scheduler.initialize([make_item("t2", "mild")], Level.MILD)
    await scheduler.fetch_pair(Level.SOFT)
    calls = len(source.calls)

    pair = await scheduler.change_level(Level.SOFT)

    assert pair.is_empty
    assert scheduler.is_exhausted
    assert len(source.calls) == calls


async def test_change_level_failure_is_raised_and_recorded(soft_pool):
    scheduler = ChallengePairScheduler(fetch_items=FlakySource(ok_calls=0))
    scheduler.initialize(soft_pool, Level.SOFT)

    with pytest.raises(ChallengeLoadError, match=LEVEL_LOAD_ERROR):
        await scheduler.change_level(Level.MILD)

    assert scheduler.error == LEVEL_LOAD_ERROR
    assert not scheduler.is_loading
    assert scheduler.level == Level.MILD


async def test_prefetch_for_previous_level_is_dropped(soft_pool):
    mild_pool = [make_item("m-t1", "mild"), make_item("m-d1", "mild", "dare")]
    source = BlockingSource(blocked={Level.SOFT})
    scheduler = ChallengePairScheduler(fetch_items=source)
    scheduler.initialize(soft_pool + mild_pool, Level.SOFT)
    stale = asyncio.create_task(scheduler.load_next_pair())
    await asyncio.sleep(0)

    await scheduler.change_level(Level.MILD)
    source.gate.set()
    await stale
    await scheduler.wait_for_prefetch()

    assert ids(scheduler.current_pair) == ["m-t1", "m-d1"]
    assert all(item.level == Level.MILD for item in scheduler.next_pair.items())


async def test_update_used_items_does_not_fetch(scheduler, soft_pool, source):
    scheduler.initialize(soft_pool, Level.SOFT)

    scheduler.update_used_items({"soft": {"truth": ["soft-truth-1"]}}, ["soft-dare-1"])

    assert source.calls == []


async def test_reset_clears_state_and_cache(scheduler, soft_pool, source):
    scheduler.initialize(soft_pool, Level.SOFT)
    await scheduler.load_initial_pair()
    await scheduler.wait_for_prefetch()

    scheduler.reset()

    state = scheduler.get_state()
    assert state.current.is_empty
    assert state.next.is_empty
    assert not state.loading
    assert state.error is None
    assert not state.exhausted

    scheduler.initialize(soft_pool, Level.SOFT)
    calls = len(source.calls)
    await scheduler.change_level(Level.SOFT)
    assert len(source.calls) == calls + 2
