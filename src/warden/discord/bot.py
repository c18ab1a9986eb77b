"""Discord bot hosting the worker control slash commands."""

import logging

import discord
from discord.ext import commands

from warden.api.services import Services
from warden.discord.commands import register_slash_commands

logger = logging.getLogger(__name__)


class CommandBot(commands.Bot):
    """Discord bot that only serves slash commands."""

    def __init__(self, services: Services):
        intents = discord.Intents.default()
        intents.dm_messages = True

        super().__init__(
            command_prefix="!warden_",
            intents=intents,
            help_command=None,
        )
        self.services = services

    async def setup_hook(self):
        """Register slash commands before connecting."""
        register_slash_commands(self, self.services)
        logger.info("Registered slash commands")

    async def on_ready(self):
        logger.info(f"Command bot connected as {self.user}")
        try:
            synced = await self.tree.sync()
        except discord.HTTPException as exc:
            logger.error(f"Failed to sync slash commands: {exc}")
            return
        logger.info(f"Synced {len(synced)} slash commands")
