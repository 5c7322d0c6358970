"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from .app import FeedNotifierApp, TrackError
from .models import PLATFORMS, TWITCH, TWITTER


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Discord notifications for Twitch and Twitter")
    parser.add_argument("--db-path", default="feeds.db", help="Путь к файлу хранилища")
    parser.add_argument(
        "--discord-token",
        help="Токен Discord бота. Можно передать через FEED_DISCORD_TOKEN",
    )
    parser.add_argument("--twitch-client-id", help="Можно передать через FEED_TWITCH_CLIENT_ID")
    parser.add_argument(
        "--twitch-client-secret", help="Можно передать через FEED_TWITCH_CLIENT_SECRET"
    )
    parser.add_argument("--twitter-bearer", help="Можно передать через FEED_TWITTER_BEARER")
    parser.add_argument("--log-level", default="INFO", help="Уровень логирования")

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="Запустить проверку лент")

    track = commands.add_parser("track", help="Начать отслеживание в канале")
    track.add_argument("platform", choices=PLATFORMS)
    track.add_argument("name", help="Логин канала или имя аккаунта")
    track.add_argument("--channel", required=True, help="ID канала Discord")
    track.add_argument("--guild", help="ID сервера Discord (пусто для личных сообщений)")
    track.add_argument("--user", default="0", help="ID пользователя, добавившего отслеживание")
    track.add_argument("--color", help="Цвет карточки в hex, например 9146FF")

    untrack = commands.add_parser("untrack", help="Прекратить отслеживание в канале")
    untrack.add_argument("platform", choices=PLATFORMS)
    untrack.add_argument("name")
    untrack.add_argument("--channel", required=True)

    listing = commands.add_parser("list", help="Показать отслеживаемые ленты")
    listing.add_argument("platform", nargs="?", choices=PLATFORMS)

    option = commands.add_parser("set-option", help="Настройка канала, например posts.retweets")
    option.add_argument("channel")
    option.add_argument("key")
    option.add_argument("value", nargs="?", help="Без значения настройка сбрасывается")

    mention = commands.add_parser("set-mention", help="Упоминание для отслеживания")
    mention.add_argument("platform", choices=PLATFORMS)
    mention.add_argument("name")
    mention.add_argument("--channel", required=True)
    mention.add_argument("--role", help="ID роли")
    mention.add_argument("--text", help="Текст упоминания")

    setting = commands.add_parser("set", help="Общая настройка, например runtime.feed_timeout")
    setting.add_argument("key", nargs="?", help="Без ключа выводятся все настройки")
    setting.add_argument("value", nargs="?", help="Без значения настройка сбрасывается")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "run"

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    discord_token = args.discord_token or os.getenv("FEED_DISCORD_TOKEN")
    if command == "run" and not discord_token:
        parser.error("Нужно передать --discord-token или переменную окружения FEED_DISCORD_TOKEN")

    app = FeedNotifierApp(
        db_path=Path(args.db_path),
        discord_token=discord_token,
        twitch_client_id=args.twitch_client_id or os.getenv("FEED_TWITCH_CLIENT_ID"),
        twitch_client_secret=args.twitch_client_secret or os.getenv("FEED_TWITCH_CLIENT_SECRET"),
        twitter_bearer=args.twitter_bearer or os.getenv("FEED_TWITTER_BEARER"),
    )
    try:
        if command == "run":
            try:
                asyncio.run(app.run())
            except KeyboardInterrupt:
                logging.getLogger(__name__).info("Остановка по запросу пользователя")
            return 0
        return _run_command(app, args)
    except TrackError as exc:
        print(exc, file=sys.stderr)
        return 1
    finally:
        app.close()


def _run_command(app: FeedNotifierApp, args: argparse.Namespace) -> int:
    store = app.store
    if args.command == "track":
        result = asyncio.run(
            app.track(
                args.platform,
                args.name,
                channel_id=args.channel,
                guild_id=args.guild,
                user_id=args.user,
            )
        )
        if args.color:
            store.set_target_color(result.target.id, int(args.color.lstrip("#"), 16))
        label = _label(result.feed.platform, result.feed.display_name)
        state = "теперь" if result.created else "уже"
        print(f"Канал {args.channel} {state} отслеживает {label}")
        return 0

    if args.command == "untrack":
        app.untrack(args.platform, args.name, args.channel)
        print(f"Отслеживание {args.platform}/{args.name} в канале {args.channel} удалено")
        return 0

    if args.command == "list":
        feeds = store.list_feeds(args.platform)
        if not feeds:
            print("Нет отслеживаемых лент")
        for feed in feeds:
            channels = ", ".join(target.channel_id for target in store.list_targets(feed.id))
            print(f"{_label(feed.platform, feed.display_name)} ({feed.external_id}): {channels}")
        return 0

    if args.command == "set-option":
        if args.value is None:
            store.delete_channel_option(args.channel, args.key)
        else:
            store.set_channel_option(args.channel, args.key, args.value)
        return 0

    if args.command == "set-mention":
        feed = app.find_feed(args.platform, args.name)
        target = store.find_target(feed.id, args.channel) if feed is not None else None
        if target is None:
            raise TrackError(f"Канал {args.channel} не отслеживает {args.platform}/{args.name}")
        app.registry.set_mention(target, args.role, args.text)
        return 0

    if args.command == "set":
        if args.key is None:
            for key, value in store.iter_settings():
                print(f"{key} = {value}")
        elif args.value is None:
            store.delete_setting(args.key)
        else:
            store.set_setting(args.key, args.value)
        return 0
    return 2


def _label(platform: str, name: str) -> str:
    if platform == TWITTER:
        return f"@{name}"
    if platform == TWITCH:
        return f"twitch.tv/{name}"
    return name


if __name__ == "__main__":
    sys.exit(main())
