from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Level(str, Enum):
    SOFT = "soft"
    MILD = "mild"
    HOT = "hot"
    SPICY = "spicy"
    KINKY = "kinky"

    @property
    def emoji(self) -> str:
        return {
            Level.SOFT: "🌸",
            Level.MILD: "😏",
            Level.HOT: "🔥",
            Level.SPICY: "🌶",
            Level.KINKY: "⛓",
        }[self]

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def next_level(self) -> Optional["Level"]:
        levels = list(Level)
        idx = levels.index(self)
        return levels[idx + 1] if idx < len(levels) - 1 else None


class ItemKind(str, Enum):
    TRUTH = "truth"
    DARE = "dare"

    @property
    def other(self) -> "ItemKind":
        return ItemKind.DARE if self is ItemKind.TRUTH else ItemKind.TRUTH


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


# level -> kind -> item ids
UsedItems = Dict[str, Dict[str, List[str]]]


class Item(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    level: Level
    kind: ItemKind
    text: str
    gender_for: List[Gender] = Field(default_factory=list, description="кто может получить задание")
    gender_target: List[Gender] = Field(default_factory=list, description="на ком выполняется задание")
    tags: List[str] = Field(default_factory=list)
    is_deleted: bool = False
    is_time_based: bool = False
    duration: Optional[int] = Field(default=None, description="секунды для заданий на время")


class ChallengePair(BaseModel):
    truth: Optional[Item] = None
    dare: Optional[Item] = None

    @property
    def is_empty(self) -> bool:
        return self.truth is None and self.dare is None

    @property
    def is_complete(self) -> bool:
        return self.truth is not None and self.dare is not None

    def get(self, kind: ItemKind) -> Optional[Item]:
        return self.truth if kind is ItemKind.TRUTH else self.dare

    def items(self) -> Iterator[Item]:
        for item in (self.truth, self.dare):
            if item is not None:
                yield item


class SchedulerState(BaseModel):
    current: ChallengePair = Field(default_factory=ChallengePair)
    next: ChallengePair = Field(default_factory=ChallengePair)
    loading: bool = False
    error: Optional[str] = None
    exhausted: bool = False


class Player(BaseModel):
    id: str
    name: str
    gender: Optional[Gender] = None
    consecutive_truths: int = 0
    consecutive_dares: int = 0

    def reset_counters(self) -> None:
        self.consecutive_truths = 0
        self.consecutive_dares = 0


class GameConfiguration(BaseModel):
    wild_card_enabled: bool = True
    skip_enabled: bool = True
    consecutive_limit: Optional[int] = Field(default=None, ge=1)


class GameSession(BaseModel):
    chat_id: int
    game_id: str
    players: List[Player] = Field(min_length=2, max_length=2)
    selected_level: Optional[Level] = Field(default=None, description="None — прогрессивный режим")
    current_level: Level = Level.SOFT
    turn_index: int = 0
    total_turns_at_current_level: int = 0
    used_items: UsedItems = Field(default_factory=dict)
    respect_prior_games: bool = True
    prior_item_ids: List[str] = Field(default_factory=list)
    configuration: GameConfiguration = Field(default_factory=GameConfiguration)
    current_item: Optional[Item] = None
    is_wild_card: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_progressive(self) -> bool:
        return self.selected_level is None

    @property
    def current_player(self) -> Player:
        return self.players[self.turn_index]

    @property
    def excluded_ids(self) -> List[str]:
        return list(self.prior_item_ids) if self.respect_prior_games else []

    def advance_turn(self) -> None:
        self.turn_index = (self.turn_index + 1) % len(self.players)
