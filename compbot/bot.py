from __future__ import annotations

import asyncio
import os
import sys
import time
import traceback
import discord
from discord import app_commands
from discord.ext import commands

from compbot.core.approvals import ApprovalRegistry
from compbot.core.configurations import Config, GuildSettingsService, VerificationSettings
from compbot.core.db import Database
from compbot.core.eligibility import EligibilityEvaluator
from compbot.core.extractor import OpenAIVision, StatsExtractor
from compbot.core.notify import DiscordNotifier
from compbot.core.records import RecordStore
from compbot.core.resolver import ConflictResolver
from compbot.core.roles import RoleGrantCoordinator
from compbot.core.sweeps import ReverifySweep
from compbot.utils.audit import AuditService
from compbot.utils.channels import ChannelLocator

BOT_DIR = os.path.dirname(os.path.abspath(__file__))

COGS = [
    "compbot.cogs.verification",   # Panel, DM submissions, arbiter buttons, /comp, daily reverify
    "compbot.cogs.player",         # /player view
]

# Constants
SEPARATOR = "=" * 60

# Config template for environment variable creation
DEFAULT_CONFIG_TEMPLATE = """token: "{token}"

guilds:
  - {guild_id}

# Discord user id allowed to approve/deny tag conflicts
arbiter_id: {arbiter_id}

# 0 means not configured; channels are found or created by name
channels:
  player_cards: 0
  verification_name: "comp-verification"
  log_name: "comp-logs"
  category_name: "comp"

roles:
  verified: 0

verification:
  min_games: 100
  min_win_pct: 80.0
  reverify_days: 30
  role_name: "Comp Verified"
  debug: false

vision:
  model: "gpt-5-mini"
  fallbacks: ["gpt-5-mini", "gpt-4o-mini", "gpt-4o", "gpt-5"]
"""


def _print_section(title: str = ""):
    """Print a section separator with optional title."""
    print(f"\n{SEPARATOR}")
    if title:
        print(title)
        print(SEPARATOR)


class CompBot(commands.Bot):
    def __init__(self, cfg: Config, db: Database, settings: VerificationSettings | None = None):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True

        super().__init__(
            command_prefix=commands.when_mentioned_or("!"),
            intents=intents,
        )
        self.cfg = cfg
        self.db = db
        self.settings = settings or VerificationSettings.from_config(cfg)
        self.started_ts = int(time.time())

        self.guild_settings = GuildSettingsService(db)
        self.audit = AuditService(db)
        self.store = RecordStore(db)
        self.registry = ApprovalRegistry()
        self.locator = ChannelLocator(self.guild_settings, self.settings)
        self.notifier = DiscordNotifier(self, self.locator, self.settings)
        self.vision = OpenAIVision(self.settings.openai_api_key, self.settings.model_candidates, self.settings.debug)
        self.extractor = StatsExtractor(self.vision)
        self.evaluator = EligibilityEvaluator(self.settings.min_games, self.settings.min_win_pct)
        self.coordinator = RoleGrantCoordinator(
            self.get_guild, self.store, self.notifier, self.audit, self.guild_settings, self.settings
        )
        self.resolver = ConflictResolver(
            self.store, self.registry, self.extractor, self.evaluator, self.coordinator,
            self.notifier, self.audit, self.settings,
        )
        self.sweep = ReverifySweep(self.store, self.coordinator, self.notifier, self.settings)

        self._commands_synced = False

    def configured_guild_ids(self) -> list[int]:
        raw = self.cfg.get("guilds", default=[]) or []
        if not isinstance(raw, list):
            raw = str(raw).split(",")
        ids = []
        for item in raw:
            try:
                ids.append(int(str(item).strip()))
            except ValueError:
                print(f"✗ Error: Invalid guild ID format '{item}'")
        return ids

    async def setup_hook(self):
        """Initialize database, choose a vision model and load cogs."""
        _print_section("Initializing CompBot...")

        try:
            await self.db.connect()
            print("✓ Database connected")
            await self.db.migrate()
            print("✓ Database migrations completed")
        except Exception as e:
            print(f"✗ Database error during setup: {e}")
            traceback.print_exc()
            raise

        await self.vision.choose_model()

        loaded_count = 0
        failed_count = 0
        for ext in COGS:
            try:
                await self.load_extension(ext)
                loaded_count += 1
                print(f"✓ Loaded: {ext}")
            except commands.ExtensionError as e:
                failed_count += 1
                print(f"✗ Failed to load {ext}: {e}")
                traceback.print_exc()

        _print_section(f"Extensions: {loaded_count} loaded, {failed_count} failed")
        print("Waiting for bot to be ready...")
        print()

    async def _sync_commands(self):
        guild_ids = self.configured_guild_ids()
        bot_guild_ids = {g.id for g in self.guilds}
        if not guild_ids:
            print("No specific guild IDs found in config. Syncing globally...")
            try:
                synced = await self.tree.sync()
                print(f"✓ Synced {len(synced)} global commands")
            except discord.HTTPException as e:
                print(f"✗ Global sync failed: {e}")
            self._commands_synced = True
            return

        for gid in guild_ids:
            if gid not in bot_guild_ids:
                print(f"⚠ Warning: Bot is not in guild {gid}")
                continue
            guild_obj = discord.Object(id=gid)
            try:
                self.tree.copy_global_to(guild=guild_obj)
                synced = await self.tree.sync(guild=guild_obj)
                print(f"✓ Successfully synced {len(synced)} commands to guild {gid}")
            except discord.HTTPException as e:
                print(f"✗ HTTP Error {e.status} syncing guild {gid}: {e}")
        self._commands_synced = True

    async def on_ready(self):
        """Called when the bot is ready. Sync commands once."""
        _print_section()
        print(f"Bot is ready! Logged in as {self.user} (ID: {self.user.id})")
        print(f"Connected to {len(self.guilds)} guild(s)")
        if not self.extractor.available:
            print("⚠ Image parsing disabled: no working OpenAI model")
        print()

        if not self._commands_synced:
            await self._sync_commands()

    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        """Global error handler for app commands."""
        error_messages = {
            app_commands.CommandOnCooldown: lambda e: f"This command is on cooldown. Try again in {e.retry_after:.1f} seconds.",
            app_commands.MissingPermissions: "You don't have permission to use this command.",
            app_commands.BotMissingPermissions: "I don't have the required permissions to execute this command.",
        }

        message = None
        for error_type, msg in error_messages.items():
            if isinstance(error, error_type):
                message = msg(error) if callable(msg) else msg
                break

        if message is None:
            print(f"Unhandled command error: {error}")
            traceback.print_exc()
            message = "An error occurred while executing this command."

        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except discord.HTTPException:
            pass

    async def on_error(self, event_method: str, *args, **kwargs):
        """Global error handler for events."""
        print(f"Error in event {event_method}:")
        traceback.print_exc()

    async def close(self):
        await super().close()
        await self.db.close()


async def main():
    config_path = os.getenv("COMPBOT_CONFIG", os.path.join(BOT_DIR, "config.yml"))
    db_path = os.getenv("COMPBOT_DB", os.path.join(BOT_DIR, "compbot.sqlite3"))

    # Create config from environment variables if it doesn't exist
    if not os.path.exists(config_path):
        _print_section("config.yml not found. Attempting to create from environment variables...")

        token = os.getenv("DISCORD_BOT_TOKEN")
        if not token:
            print("ERROR: config.yml file not found and DISCORD_BOT_TOKEN not set!")
            print(SEPARATOR)
            print(f"Expected location: {config_path}")
            print("\nTo fix this:")
            print("1. Create config.yml (see config.example.yml), OR")
            print("2. Set DISCORD_BOT_TOKEN environment variable")
            print(SEPARATOR)
            sys.exit(1)

        guild_id = os.getenv("DISCORD_GUILDS", "123456789012345678")
        arbiter_id = os.getenv("ADMIN_USER_ID", "0")
        config_content = DEFAULT_CONFIG_TEMPLATE.format(token=token, guild_id=guild_id, arbiter_id=arbiter_id)

        try:
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(config_content)
            print(f"✓ Created config.yml from environment variables at {config_path}")
        except OSError as e:
            print(f"✗ Failed to create config.yml: {e}")
            sys.exit(1)

    cfg = Config.load(config_path)

    token = cfg.get("token")
    if not token or token == "PUT_YOUR_BOT_TOKEN_HERE":
        _print_section("ERROR: Bot token not configured!")
        print("Please set your bot token in config.yml")
        sys.exit(1)

    db = Database(db_path)
    bot = CompBot(cfg, db)
    if not bot.settings.admin_user_id:
        print("⚠ No arbiter configured (ADMIN_USER_ID / arbiter_id); tag conflicts cannot be resolved")

    # Retry logic for rate limiting
    max_retries = 5
    for attempt in range(max_retries):
        try:
            await bot.start(token)
            break
        except discord.HTTPException as e:
            if e.status == 429:
                if attempt < max_retries - 1:
                    wait_time = 5 * (2 ** attempt)
                    print(f"Rate limited (429). Waiting {wait_time} seconds before retry ({attempt + 1}/{max_retries})...")
                    await asyncio.sleep(wait_time)
                    continue
                print(f"ERROR: Rate limited after {max_retries} attempts. Please wait and try again later.")
                sys.exit(1)
            raise
        except discord.LoginFailure as e:
            print(f"ERROR: Discord Login Failure: {e}")
            print("Please check your bot token in config.yml or DISCORD_BOT_TOKEN environment variable.")
            sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
