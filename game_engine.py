from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from challenge_pairs import ChallengePairScheduler
from items import add_used_item, all_used_ids, get_item_counts, select_target_player, substitute_player_names
from models import GameConfiguration, GameSession, Item, ItemKind, Level, Player

logger = logging.getLogger(__name__)

TURN_SUGGESTION_INTERVAL = 10


class GameRuleError(ValueError):
    """Raised when a player action is not allowed in the current game state."""


@dataclass
class ActiveGame:
    session: GameSession
    pairs: ChallengePairScheduler


def can_choose_type(player: Player, kind: ItemKind, configuration: GameConfiguration) -> bool:
    limit = configuration.consecutive_limit
    if limit is None:
        return True
    if kind is ItemKind.TRUTH:
        return player.consecutive_truths < limit
    return player.consecutive_dares < limit


class SessionManager:
    def __init__(self, scheduler_factory: Callable[[], ChallengePairScheduler] = ChallengePairScheduler) -> None:
        self._games: Dict[int, ActiveGame] = {}
        self._history: Dict[int, List[str]] = {}
        self._scheduler_factory = scheduler_factory

    def start(
        self,
        chat_id: int,
        players: Sequence[Player],
        level: Optional[Level],
        configuration: GameConfiguration,
    ) -> ActiveGame:
        previous = self._games.get(chat_id)
        if previous:
            previous.pairs.reset()

        session = GameSession(
            chat_id=chat_id,
            game_id=uuid.uuid4().hex[:10],
            players=list(players),
            selected_level=level,
            current_level=level or Level.SOFT,
            prior_item_ids=self.prior_items(chat_id),
            configuration=configuration,
        )
        game = ActiveGame(session=session, pairs=self._scheduler_factory())
        self._games[chat_id] = game
        return game

    def get(self, chat_id: int) -> Optional[ActiveGame]:
        return self._games.get(chat_id)

    def prior_items(self, chat_id: int) -> List[str]:
        return list(self._history.get(chat_id, []))

    def finish(self, chat_id: int) -> Optional[ActiveGame]:
        game = self._games.pop(chat_id, None)
        if game:
            game.pairs.reset()
            history = self._history.setdefault(chat_id, [])
            history.extend(i for i in all_used_ids(game.session.used_items) if i not in history)
        return game


class GameEngine:
    """Turn flow of a two-player game on top of the challenge pair scheduler."""

    def __init__(
        self,
        session_manager: SessionManager,
        items: Sequence[Item],
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_manager = session_manager
        self.items = list(items)
        self._rng = rng or random.Random()

    def _game(self, chat_id: int) -> ActiveGame:
        game = self.session_manager.get(chat_id)
        if not game:
            raise GameRuleError("Игра не начата. Введите /start.")
        return game

    async def start_game(
        self,
        chat_id: int,
        players: Sequence[Player],
        level: Optional[Level],
        configuration: Optional[GameConfiguration] = None,
    ) -> GameSession:
        """Start a game; ``level=None`` means progressive mode starting at soft."""
        game = self.session_manager.start(chat_id, players, level, configuration or GameConfiguration())
        session = game.session
        game.pairs.initialize(self.items, session.current_level, session.used_items, session.excluded_ids)
        logger.info(
            "Game %s started in chat %s at %s (progressive=%s)",
            session.game_id, chat_id, session.current_level.value, session.is_progressive,
        )
        await game.pairs.load_initial_pair()
        return session

    def get_session(self, chat_id: int) -> Optional[GameSession]:
        game = self.session_manager.get(chat_id)
        return game.session if game else None

    def get_scheduler(self, chat_id: int) -> Optional[ChallengePairScheduler]:
        game = self.session_manager.get(chat_id)
        return game.pairs if game else None

    def available_choices(self, chat_id: int) -> Dict[ItemKind, bool]:
        game = self._game(chat_id)
        session = game.session
        pair = game.pairs.current_pair
        has = {kind: pair.get(kind) is not None for kind in ItemKind}

        choices = {}
        for kind in ItemKind:
            blocked = not can_choose_type(session.current_player, kind, session.configuration)
            choices[kind] = has[kind] and not (blocked and has[kind.other])
        return choices

    async def pick_item(self, chat_id: int, kind: ItemKind) -> Item:
        game = self._game(chat_id)
        session = game.session
        if session.current_item is not None:
            raise GameRuleError("Сначала завершите текущее задание: /done или /skip.")
        if not self.available_choices(chat_id)[kind]:
            raise GameRuleError("Этот вариант сейчас недоступен.")

        item = game.pairs.current_pair.get(kind)
        session.current_item = item
        session.is_wild_card = False
        return item

    async def pick_wild_card(self, chat_id: int) -> Item:
        game = self._game(chat_id)
        session = game.session
        if not session.configuration.wild_card_enabled:
            raise GameRuleError("Джокер отключён в этой игре.")
        if session.current_item is not None:
            raise GameRuleError("Сначала завершите текущее задание: /done или /skip.")

        item = await game.pairs.get_random_from_next_pair()
        if item is None:
            raise GameRuleError("Для джокера не осталось заданий.")
        session.current_item = item
        session.is_wild_card = True
        return item

    def render_item_text(self, chat_id: int, item: Item) -> str:
        """Fill the player placeholders of ``item`` for the player whose turn it is."""
        session = self._game(chat_id).session
        active = session.current_player
        target = select_target_player(active, session.players, item.gender_target, self._rng)
        return substitute_player_names(item.text, active, target)

    def _record_used(self, game: ActiveGame) -> Item:
        session = game.session
        item = session.current_item
        if item is None:
            raise GameRuleError("Нет активного задания.")
        session.used_items = add_used_item(session.used_items, item)
        session.total_turns_at_current_level += 1
        session.current_item = None
        game.pairs.update_used_items(session.used_items, session.excluded_ids)
        return item

    async def complete_item(self, chat_id: int) -> GameSession:
        game = self._game(chat_id)
        session = game.session
        if session.is_wild_card:
            return await self.complete_wild_card(chat_id)

        item = self._record_used(game)
        counts = get_item_counts(self.items, session.current_level, session.used_items, session.excluded_ids)
        player = session.current_player
        # A streak only counts while the other kind is still available.
        if item.kind is ItemKind.TRUTH:
            player.consecutive_truths = player.consecutive_truths + 1 if counts[ItemKind.DARE] else 0
            player.consecutive_dares = 0
        else:
            player.consecutive_dares = player.consecutive_dares + 1 if counts[ItemKind.TRUTH] else 0
            player.consecutive_truths = 0
        session.advance_turn()

        await game.pairs.mark_item_as_used(item.id)
        await game.pairs.move_to_next()
        return session

    async def complete_wild_card(self, chat_id: int) -> GameSession:
        game = self._game(chat_id)
        session = game.session
        item = self._record_used(game)
        session.is_wild_card = False
        session.current_player.reset_counters()
        session.advance_turn()

        await game.pairs.mark_wild_card_item_as_used(item.id)
        await game.pairs.handle_wild_card_completion()
        return session

    async def skip_item(self, chat_id: int) -> GameSession:
        game = self._game(chat_id)
        session = game.session
        if not session.configuration.skip_enabled:
            raise GameRuleError("Пропуски отключены в этой игре.")
        self._record_used(game)
        session.is_wild_card = False
        await game.pairs.move_to_next()
        return session

    async def change_level(self, chat_id: int, level: Level) -> GameSession:
        game = self._game(chat_id)
        session = game.session
        if session.current_item is not None:
            raise GameRuleError("Сначала завершите текущее задание: /done или /skip.")
        try:
            await game.pairs.change_level(level)
        finally:
            # The scheduler switches levels before fetching, so follow it even when the fetch fails.
            session.current_level = game.pairs.level
            session.total_turns_at_current_level = 0
        return session

    async def go_next_level(self, chat_id: int) -> GameSession:
        session = self._game(chat_id).session
        if not session.is_progressive:
            raise GameRuleError("Переход по уровням доступен только в прогрессивном режиме.")
        next_level = session.current_level.next_level
        if next_level is None:
            raise GameRuleError("Это уже самый высокий уровень.")
        await self.change_level(chat_id, next_level)
        for player in session.players:
            player.reset_counters()
        return session

    def should_suggest_next_level(self, chat_id: int) -> bool:
        game = self._game(chat_id)
        session = game.session
        if not session.is_progressive or session.current_level.next_level is None:
            return False
        return (
            session.total_turns_at_current_level >= TURN_SUGGESTION_INTERVAL
            or not game.pairs.current_pair.is_complete
        )

    def toggle_respect_prior_games(self, chat_id: int, respect: bool) -> GameSession:
        game = self._game(chat_id)
        session = game.session
        session.respect_prior_games = respect
        game.pairs.update_used_items(session.used_items, session.excluded_ids)
        game.pairs.prefetch_next()
        return session

    def finish_game(self, chat_id: int) -> Optional[GameSession]:
        game = self.session_manager.finish(chat_id)
        if not game:
            return None
        logger.info("Game %s finished in chat %s", game.session.game_id, chat_id)
        return game.session
