"""
FastAPI application for the worker orchestrator.

The lifespan owns the background jobs (health reconciliation, retention
cleanup, token sweep, metrics collection) and, when configured, the command
channel bot.
"""

import asyncio
import contextlib
import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from warden.common import settings
from warden.api.services import get_services
from warden.api.web import router as login_router

logger = logging.getLogger(__name__)


async def start_command_bot(services) -> tuple | None:
    if not settings.DISCORD_COMMANDS_ENABLED:
        logger.info("Command channel disabled")
        return None

    from warden.discord.bot import CommandBot

    bot = CommandBot(services)
    task = asyncio.create_task(bot.start(settings.DISCORD_BOT_TOKEN))
    return bot, task


async def stop_command_bot(bot_and_task: tuple | None) -> None:
    if not bot_and_task:
        return
    bot, task = bot_and_task
    if not bot.is_closed():
        await bot.close()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    services = get_services()
    await asyncio.to_thread(services.lifecycle.ensure_network)

    tasks = services.periodic_tasks()
    for task in tasks:
        await task.start()
    bot = await start_command_bot(services)
    logger.info(f"Orchestrator started with {len(tasks)} background jobs")

    try:
        yield
    finally:
        await stop_command_bot(bot)
        for task in tasks:
            await task.stop()
        await services.close()
        logger.info("Orchestrator stopped")


app = FastAPI(title="Warden Orchestrator API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(login_router)


@app.get("/health")
def health_check():
    """Simple health check endpoint"""
    return {"status": "healthy"}


def main(reload: bool = False):
    """Run the FastAPI server."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(
        "warden.api.app:app",
        host="0.0.0.0",
        port=settings.WEB_API_PORT,
        reload=reload,
    )


if __name__ == "__main__":
    main()
