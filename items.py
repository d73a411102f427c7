import json
import logging
import random
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

from pydantic import TypeAdapter, ValidationError

from models import Gender, Item, ItemKind, Level, Player, UsedItems

logger = logging.getLogger(__name__)

DEFAULT_ITEMS_PATH = Path(__file__).resolve().parent / "data" / "items.json"

_ITEM_LIST = TypeAdapter(List[Item])


class ItemCatalogError(RuntimeError):
    """Raised when the challenge catalog cannot be read or validated."""


def load_items(path: Optional[Union[str, Path]] = None) -> List[Item]:
    """Read the challenge catalog, skipping soft-deleted entries."""
    path = Path(path) if path else DEFAULT_ITEMS_PATH
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        items = _ITEM_LIST.validate_python(raw)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        raise ItemCatalogError(f"Не удалось загрузить задания из {path}: {exc}") from exc

    active = [item for item in items if not item.is_deleted]
    logger.info("Loaded %d challenges from %s (%d deleted skipped)", len(active), path, len(items) - len(active))
    return active


def _key(value: Union[str, Level, ItemKind]) -> str:
    return value.value if isinstance(value, (Level, ItemKind)) else value


def get_used_items_for_level_kind(used_items: UsedItems, level: Union[str, Level], kind: Union[str, ItemKind]) -> List[str]:
    return used_items.get(_key(level), {}).get(_key(kind), [])


def is_item_used(used_items: UsedItems, item: Item) -> bool:
    return item.id in get_used_items_for_level_kind(used_items, item.level, item.kind)


def add_used_item(used_items: UsedItems, item: Item) -> UsedItems:
    """Return a copy of ``used_items`` with ``item`` recorded under its level and kind."""
    updated: UsedItems = {level: {kind: list(ids) for kind, ids in kinds.items()} for level, kinds in used_items.items()}
    ids = updated.setdefault(item.level.value, {}).setdefault(item.kind.value, [])
    if item.id not in ids:
        ids.append(item.id)
    return updated


def all_used_ids(used_items: UsedItems) -> List[str]:
    return [item_id for kinds in used_items.values() for ids in kinds.values() for item_id in ids]


def get_available_items(
    items: Iterable[Item],
    level: Level,
    kind: ItemKind,
    used_items: UsedItems,
    excluded_ids: Iterable[str] = (),
) -> List[Item]:
    """Items of ``level`` and ``kind`` that are neither used in this game nor excluded."""
    used = set(get_used_items_for_level_kind(used_items, level, kind))
    excluded = set(excluded_ids)
    return [
        item
        for item in items
        if item.level == level
        and item.kind == kind
        and item.id not in used
        and item.id not in excluded
    ]


def get_item_counts(
    items: Iterable[Item],
    level: Level,
    used_items: UsedItems,
    excluded_ids: Iterable[str] = (),
) -> Dict[ItemKind, int]:
    items = list(items)
    excluded = list(excluded_ids)
    return {kind: len(get_available_items(items, level, kind, used_items, excluded)) for kind in ItemKind}


ACTIVE_PLAYER = "{active_player}"
OTHER_PLAYER = "{other_player}"
OTHER_PLAYER_FALLBACK = "партнёр"


def select_target_player(
    active: Player,
    players: Sequence[Player],
    gender_target: Sequence[Gender],
    rng: Optional[random.Random] = None,
) -> Optional[Player]:
    """Pick who the challenge is performed on.

    Any other player qualifies when ``gender_target`` is empty, and so does a player
    whose gender was never given. Returns ``None`` when nobody qualifies.
    """
    candidates = [
        player
        for player in players
        if player.id != active.id
        and (not gender_target or player.gender is None or player.gender in gender_target)
    ]
    if not candidates:
        return None
    return (rng or random).choice(candidates)


def substitute_player_names(text: str, active: Player, target: Optional[Player]) -> str:
    text = text.replace(ACTIVE_PLAYER, active.name)
    return text.replace(OTHER_PLAYER, target.name if target else OTHER_PLAYER_FALLBACK)
