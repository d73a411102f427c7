import asyncio
import functools
import logging
from typing import Optional

from telegram import Update
from telegram.helpers import escape_markdown
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from challenge_pairs import ChallengeLoadError
from config import Settings
from game_engine import GameEngine, GameRuleError, SessionManager
from items import load_items
from models import GameConfiguration, Gender, Item, ItemKind, Level, Player

logger = logging.getLogger(__name__)

PROGRESSIVE = "progressive"
LEVEL_CHOICES = " | ".join([level.value for level in Level] + [PROGRESSIVE])


def _engine(context: ContextTypes.DEFAULT_TYPE) -> GameEngine:
    return context.application.bot_data["engine"]


def game_action(handler):
    """Reply with the reason when the engine refuses an action."""

    @functools.wraps(handler)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        try:
            await handler(update, context)
        except GameRuleError as exc:
            await update.message.reply_text(str(exc))
        except ChallengeLoadError as exc:
            logger.warning("Chat %s: %s", update.effective_chat.id, exc)
            await update.message.reply_text("😕 Не удалось загрузить задания. Попробуйте ещё раз.")

    return wrapper


def render_choice(engine: GameEngine, chat_id: int) -> str:
    session = engine.get_session(chat_id)
    scheduler = engine.get_scheduler(chat_id)
    level = session.current_level

    if scheduler.is_exhausted:
        return (
            f"{level.emoji} На уровне {level.label} задания закончились.\n"
            f"Выберите другой уровень (/level {LEVEL_CHOICES}) или завершите игру /finish."
        )

    choices = engine.available_choices(chat_id)
    lines = [f"🎯 Ход: *{escape_markdown(session.current_player.name)}* · уровень {level.emoji} {level.label}"]
    options = []
    if choices[ItemKind.TRUTH]:
        options.append("/truth — правда")
    if choices[ItemKind.DARE]:
        options.append("/dare — действие")
    if session.configuration.wild_card_enabled:
        options.append("/wild — джокер")
    lines.extend(options)
    if engine.should_suggest_next_level(chat_id):
        lines.append(f"Может, пора погорячее? /nextlevel → {level.next_level.label}")
    return "\n".join(lines)


def _schedule_timer(context: ContextTypes.DEFAULT_TYPE, chat_id: int, item: Item, text: str) -> None:
    if not context.job_queue or not item.is_time_based or not item.duration:
        return
    _cancel_timer(context, chat_id)
    job_name = f"timer-{chat_id}-{item.id}"
    context.job_queue.run_once(_timer_job, when=item.duration, chat_id=chat_id, name=job_name, data=text)
    context.chat_data["timer_job_name"] = job_name


def _cancel_timer(context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> None:
    job_name: Optional[str] = context.chat_data.pop("timer_job_name", None)
    if job_name and context.job_queue:
        for job in context.job_queue.get_jobs_by_name(job_name):
            job.schedule_removal()


async def _timer_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    job = context.job
    if job is None:
        return
    await context.bot.send_message(
        chat_id=job.chat_id,
        text=f"⏰ Время вышло!\n{job.data}\n\nОтметьте выполнение: /done",
    )


async def send_rules(update: Update):
    rules = (
        "🔥 Правда или действие для двоих:\n"
        "• Игроки ходят по очереди и выбирают /truth или /dare.\n"
        "• /wild — джокер: случайное задание из следующей пары.\n"
        "• /done — задание выполнено, /skip — пропустить.\n"
        f"• Уровни: {LEVEL_CHOICES}.\n"
        "• В прогрессивном режиме уровень повышается командой /nextlevel.\n"
        "• /prior off — разрешить задания из прошлых игр.\n"
        "• /finish — закончить игру."
    )
    await update.message.reply_text(rules)


async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    _engine(context).finish_game(chat_id)
    _cancel_timer(context, chat_id)
    context.chat_data["players"] = []
    context.chat_data["awaiting_names"] = True
    await update.message.reply_text("🔥 Правда или действие для двоих.\nНапишите имя первого игрока:")


def parse_gender(text: str) -> Optional[Gender]:
    answer = text.strip().lower()
    if answer in ("м", "муж", "мужской", "m", "male"):
        return Gender.MALE
    if answer in ("ж", "жен", "женский", "f", "female"):
        return Gender.FEMALE
    return None


async def ask_names(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = (update.message.text or "").strip()
    players = context.chat_data.setdefault("players", [])

    if players and "gender" not in players[-1]:
        gender = parse_gender(text)
        if gender is None:
            await update.message.reply_text("Ответьте «м» или «ж».")
            return
        players[-1]["gender"] = gender
        if len(players) == 1:
            await update.message.reply_text("Теперь имя второго игрока:")
            return
        context.chat_data["awaiting_names"] = False
        await update.message.reply_text(
            f"Отлично! {players[0]['name']} и {players[1]['name']}, выберите уровень:\n/level {LEVEL_CHOICES}"
        )
        return

    if not text:
        await update.message.reply_text("Имя не может быть пустым.")
        return
    players.append({"name": text})
    await update.message.reply_text(f"{text}, ваш пол? Напишите «м» или «ж».")


@game_action
async def cmd_level(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    engine = _engine(context)

    if not context.args:
        session = engine.get_session(chat_id)
        current = session.current_level.label if session else "не выбран"
        await update.message.reply_text(f"Текущий уровень: {current}. Используйте /level {LEVEL_CHOICES}.")
        return

    choice = context.args[0].lower()
    if choice != PROGRESSIVE and choice not in {level.value for level in Level}:
        await update.message.reply_text(f"Неизвестный уровень. Варианты: {LEVEL_CHOICES}.")
        return

    if engine.get_session(chat_id) is None:
        entries = context.chat_data.get("players") or []
        if len(entries) < 2 or context.chat_data.get("awaiting_names"):
            await update.message.reply_text("Сначала представьтесь через /start.")
            return
        settings: Settings = context.application.bot_data["settings"]
        players = [
            Player(id=f"p{i}", name=entry["name"], gender=entry["gender"]) for i, entry in enumerate(entries)
        ]
        await engine.start_game(
            chat_id,
            players,
            None if choice == PROGRESSIVE else Level(choice),
            GameConfiguration(consecutive_limit=settings.consecutive_limit),
        )
    elif choice == PROGRESSIVE:
        await update.message.reply_text("Прогрессивный режим выбирается в начале игры: /start.")
        return
    else:
        await engine.change_level(chat_id, Level(choice))

    await update.message.reply_text(render_choice(engine, chat_id), parse_mode="Markdown")


async def _show_item(update: Update, context: ContextTypes.DEFAULT_TYPE, item: Item, wild: bool) -> None:
    chat_id = update.effective_chat.id
    title = "🃏 Джокер" if wild else ("🗣 Правда" if item.kind is ItemKind.TRUTH else "🎲 Действие")
    body = _engine(context).render_item_text(chat_id, item)
    text = f"{title}:\n\n{body}"
    if item.is_time_based and item.duration:
        text += f"\n\n⏱ {item.duration} сек."
    await update.message.reply_text(text + "\n\n/done — выполнено, /skip — пропустить")
    _schedule_timer(context, chat_id, item, body)


@game_action
async def cmd_truth(update: Update, context: ContextTypes.DEFAULT_TYPE):
    item = await _engine(context).pick_item(update.effective_chat.id, ItemKind.TRUTH)
    await _show_item(update, context, item, wild=False)


@game_action
async def cmd_dare(update: Update, context: ContextTypes.DEFAULT_TYPE):
    item = await _engine(context).pick_item(update.effective_chat.id, ItemKind.DARE)
    await _show_item(update, context, item, wild=False)


@game_action
async def cmd_wild(update: Update, context: ContextTypes.DEFAULT_TYPE):
    item = await _engine(context).pick_wild_card(update.effective_chat.id)
    await _show_item(update, context, item, wild=True)


@game_action
async def cmd_done(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    engine = _engine(context)
    _cancel_timer(context, chat_id)
    await engine.complete_item(chat_id)
    await update.message.reply_text("✅ Засчитано!\n\n" + render_choice(engine, chat_id), parse_mode="Markdown")


@game_action
async def cmd_skip(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    engine = _engine(context)
    _cancel_timer(context, chat_id)
    await engine.skip_item(chat_id)
    await update.message.reply_text("🛟 Пропуск принят.\n\n" + render_choice(engine, chat_id), parse_mode="Markdown")


@game_action
async def cmd_next_level(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    engine = _engine(context)
    session = await engine.go_next_level(chat_id)
    await update.message.reply_text(
        f"⬆️ Новый уровень: {session.current_level.emoji} {session.current_level.label}\n\n"
        + render_choice(engine, chat_id),
        parse_mode="Markdown",
    )


@game_action
async def cmd_prior(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not context.args or context.args[0].lower() not in ("on", "off"):
        await update.message.reply_text("Используйте /prior on или /prior off.")
        return
    respect = context.args[0].lower() == "on"
    _engine(context).toggle_respect_prior_games(update.effective_chat.id, respect)
    await update.message.reply_text(
        "Задания из прошлых игр не повторяются." if respect else "Задания из прошлых игр снова в игре."
    )


async def cmd_rules(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await send_rules(update)


async def cmd_finish(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = update.effective_chat.id
    _cancel_timer(context, chat_id)
    session = _engine(context).finish_game(chat_id)
    if session is None:
        await update.message.reply_text("Активной игры нет. Начните с /start.")
        return
    played = sum(len(ids) for kinds in session.used_items.values() for ids in kinds.values())
    await update.message.reply_text(f"Игра завершена! Сыграно заданий: {played} ❤️")


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if context.chat_data.get("awaiting_names"):
        await ask_names(update, context)
        return
    await update.message.reply_text("Команды: /truth, /dare, /wild, /done, /skip. Правила: /rules.")


def build_application(settings: Settings, updater: bool = True) -> Application:
    builder = ApplicationBuilder().token(settings.telegram_token)
    if not updater:
        builder = builder.updater(None)
    application = builder.build()

    engine = GameEngine(SessionManager(), load_items(settings.items_path))
    application.bot_data["engine"] = engine
    application.bot_data["settings"] = settings

    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("rules", cmd_rules))
    application.add_handler(CommandHandler("level", cmd_level))
    application.add_handler(CommandHandler("truth", cmd_truth))
    application.add_handler(CommandHandler("dare", cmd_dare))
    application.add_handler(CommandHandler("wild", cmd_wild))
    application.add_handler(CommandHandler("done", cmd_done))
    application.add_handler(CommandHandler("skip", cmd_skip))
    application.add_handler(CommandHandler("nextlevel", cmd_next_level))
    application.add_handler(CommandHandler("prior", cmd_prior))
    application.add_handler(CommandHandler("finish", cmd_finish))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))
    return application


async def main():
    settings = Settings.load()
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level,
    )
    application = build_application(settings)

    logger.info("Bot starting...")
    await application.initialize()
    await application.start()
    await application.updater.start_polling()
    await asyncio.Event().wait()


if __name__ == "__main__":
    asyncio.run(main())
