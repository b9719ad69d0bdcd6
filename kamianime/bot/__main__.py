"""
kamianime.bot.__main__ — Entry point for ``python -m kamianime.bot``
=====================================================================

Wiring:
1. Load .env (secrets) and config.yaml (soft settings).
2. Create the SQLAlchemy engine and ensure tables exist.
3. Build one :class:`EventBus` per platform and the :class:`SyncBridge`.
4. Create the :class:`KamiBot` around the bridge.
5. Serve the webhook API (uvicorn) on ``dashboard_port`` with the same
   bridge, so website events reach the bot's Discord bus.
6. Run both until Ctrl+C or SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

import uvicorn
from dotenv import load_dotenv

from kamianime.config import load_config
from kamianime.database.engine import create_db_engine, init_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("kamianime")


async def _serve(bot, server: uvicorn.Server, token: str) -> None:
    async with bot:
        await asyncio.gather(bot.start(token), server.serve())


def main() -> None:
    """Bootstrap and run the KamiAnime bot and webhook API."""
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token or token == "your-discord-bot-token-here":
        logger.critical(
            "DISCORD_TOKEN is not set.  "
            "Copy .env.example → .env and paste your bot token."
        )
        sys.exit(1)

    # Imported after load_dotenv(): deps validates JWT_SECRET at import time.
    try:
        from kamianime.api.deps import load_webhook_secret
        from kamianime.api.main import create_app
        webhook_secret = load_webhook_secret()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        sys.exit(1)

    from kamianime.bot.core import KamiBot
    from kamianime.engine.bus import EventBus
    from kamianime.engine.events import Platform
    from kamianime.services.sync_service import SyncBridge

    cfg = load_config()
    logger.info("Config loaded — Community: %s (streak zone %s)", cfg.community_name, cfg.streak_timezone)

    engine = create_db_engine()
    init_db(engine)

    buses = {platform: EventBus(platform) for platform in Platform}
    bridge = SyncBridge.from_config(engine, buses, cfg, webhook_secret=webhook_secret)
    bot = KamiBot(cfg=cfg, engine=engine, bridge=bridge)

    server = uvicorn.Server(uvicorn.Config(
        create_app(bridge),
        host="0.0.0.0",
        port=cfg.dashboard_port,
        log_config=None,
    ))

    logger.info("Starting KamiAnime bot and webhook API on port %d…", cfg.dashboard_port)
    try:
        asyncio.run(_serve(bot, server, token))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
