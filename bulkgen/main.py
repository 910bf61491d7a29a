#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import asyncio
import logging
import signal
import sys

from bulkgen.bulk.registry import AlbumRegistry
from bulkgen.bulk.service import BulkService
from bulkgen.core.config import load_config, AppConfig
from bulkgen.core.logging import setup_logging
from bulkgen.core.prompts import build_prompts
from bulkgen.discord.client import DiscordClient
from bulkgen.domain.errors import BulkError, ConfigurationError
from bulkgen.domain.models import Status
from bulkgen.infra.albums_repo import AlbumRepository
from bulkgen.midjourney.bot import MidjourneyBot


async def main() -> int:
    try:
        config: AppConfig = load_config()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger("main").error("Invalid configuration: %s", e)
        return 2
    setup_logging(config.debug)
    log = logging.getLogger("main")

    try:
        prompts = build_prompts(config.prompts, prefix=config.prefix, suffix=config.suffix)
    except ConfigurationError as e:
        log.error("Invalid prompts: %s", e)
        return 2

    log.info("Starting bulk run for album %s (%d prompt(s))...", config.album, len(prompts))

    # Discord session
    client = DiscordClient(
        token=config.session.token,
        channel_id=config.channel_id,
        guild_id=config.guild_id,
        user_agent=config.session.user_agent,
        locale=config.session.locale,
        language=config.session.language,
        super_properties=config.session.super_properties,
        cookie=config.session.cookie,
        proxy=config.proxy,
        http_timeout=config.timeout_http,
    )
    registry = AlbumRegistry()
    try:
        await client.start()
        bot = MidjourneyBot(client)
        await bot.prepare()
    except BulkError as e:
        log.error("Couldn't connect to %s: %s", config.bot, e)
        client.close()
        return 1

    registry.start()
    repo = AlbumRepository(config.output_dir)
    service = BulkService(
        bot,
        repo,
        registry=registry,
        task_timeout=config.timeout_task,
        grace=config.timeout_grace,
    )

    def _on_update(status: Status) -> None:
        if status.error:
            log.warning("Album %s: %s", config.album, status.error)
        else:
            log.info("Album %s: %.1f%% done, about %s left", config.album, status.percentage, status.estimated)

    try:
        handle = await service.start_bulk(
            config.album,
            prompts,
            want_variations=config.variation,
            want_upscale=config.upscale,
            concurrency=config.concurrency,
            min_spacing=config.wait,
            on_update=_on_update,
            download=config.download,
            thumbnail=config.thumbnail,
        )

        # Graceful shutdown
        def _signal_handler():
            log.info("Shutdown signal received, waiting for in-flight tasks...")
            handle.cancel()

        loop = asyncio.get_running_loop()
        for s in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(s, _signal_handler)
            except NotImplementedError:
                # Not supported on some platforms (e.g. Windows)
                pass

        album = await handle.wait()
        log.info("Album %s %s: %d image(s) in %s", album.id, album.status, len(album.images),
                 repo.album_dir(album.id))
    finally:
        await registry.shutdown()
        client.close()
        log.info("Bulk run stopped.")
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
