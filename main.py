import logging

from fastapi import FastAPI, Request
from telegram import Update

from bot import build_application
from config import MissingEnvError, Settings

settings = Settings.load()
if not settings.base_url:
    raise MissingEnvError("Для режима webhook нужна переменная окружения BASE_URL.")

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

application = build_application(settings, updater=False)
app = FastAPI(title="Truth or Dare Bot")


@app.on_event("startup")
async def on_startup() -> None:
    webhook_url = f"{settings.base_url}/webhook"
    await application.initialize()
    await application.bot.set_webhook(webhook_url)
    await application.start()
    logger.info("Webhook set: %s", webhook_url)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await application.stop()
    await application.shutdown()


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/webhook")
async def telegram_webhook(request: Request) -> dict[str, str]:
    data = await request.json()
    update = Update.de_json(data, application.bot)
    await application.process_update(update)
    return {"status": "accepted"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=settings.port, reload=False)
