"""
PocketMT Command Line
Translate text and manage the model artifact cache
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from typing import Dict, List, Optional

from tqdm import tqdm

from .config import RuntimeSettings
from .errors import PocketMTError
from .translation_system import StatusMessage, TranslationSystem
from .utils import format_size, logger


class DownloadProgress:
    """One tqdm bar per downloaded file."""

    def __init__(self) -> None:
        self.bars: Dict[str, tqdm] = {}

    def on_file_progress(self, name: str, fraction: float, loaded: int, total: int) -> None:
        bar = self.bars.get(name)
        if bar is None:
            bar = tqdm(total=total or None, desc=name, unit="B", unit_scale=True, leave=True)
            self.bars[name] = bar
        bar.n = loaded
        bar.refresh()

    def on_file_complete(self, name: str, size: int) -> None:
        bar = self.bars.pop(name, None)
        if bar is None:
            print(f"{name}: cached ({format_size(size)})")
            return
        bar.total = size
        bar.n = size
        bar.close()

    def close(self) -> None:
        for bar in self.bars.values():
            bar.close()
        self.bars.clear()


def _print_status(message: StatusMessage) -> None:
    if message.type in ("error", "success"):
        print(f"[{message.type}] {message.message}", file=sys.stderr)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pocketmt", description="Offline multilingual translation")
    parser.add_argument("--cache-backend", choices=["memory", "sqlite", "filesystem"], help="Artifact cache backend")
    parser.add_argument("--cache-path", type=str, help="Cache database file or directory")
    parser.add_argument("--base-url", type=str, help="URL the model files are downloaded from")
    parser.add_argument("--tokenizer", choices=["vocab", "bpe", "sentencepiece"], help="Tokenizer variant")
    subparsers = parser.add_subparsers(dest="command", required=True)

    translate = subparsers.add_parser("translate", help="Translate text")
    translate.add_argument("text", nargs="?", help="Text to translate (reads stdin when omitted)")
    translate.add_argument("-s", "--source", required=True, help="Source language code")
    translate.add_argument("-t", "--target", required=True, help="Target language code")
    translate.add_argument("--num-beams", type=int, help="Beam width")
    translate.add_argument("--max-length", type=int, help="Maximum output length in tokens")

    subparsers.add_parser("download", help="Download missing model files into the cache")
    subparsers.add_parser("languages", help="List supported language codes")

    cache = subparsers.add_parser("cache", help="Inspect or clear the artifact cache")
    cache_commands = cache.add_subparsers(dest="cache_command", required=True)
    cache_list = cache_commands.add_parser("list", help="List cached artifacts")
    cache_list.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    cache_commands.add_parser("clear", help="Delete every cached artifact")
    return parser


def _settings_from_args(args: argparse.Namespace) -> RuntimeSettings:
    settings = RuntimeSettings.from_env()
    if args.cache_backend:
        settings.cache_backend = args.cache_backend
    if args.cache_path:
        settings.cache_path = args.cache_path
    if args.base_url:
        settings.base_url = args.base_url if args.base_url.endswith("/") else args.base_url + "/"
    if args.tokenizer:
        settings.tokenizer_kind = args.tokenizer
    return settings


def _run(args: argparse.Namespace, system: TranslationSystem) -> int:
    if args.command == "languages":
        print(" ".join(system.supported_languages()))
        return 0

    if args.command == "cache":
        if args.cache_command == "clear":
            system.clear_cache()
            print("Cache cleared")
            return 0
        infos = system.list_cached_artifacts()
        if args.json:
            print(json.dumps([info.to_dict() for info in infos], indent=2))
        elif not infos:
            print("Cache is empty")
        else:
            for info in infos:
                saved = datetime.fromtimestamp(info.timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")
                print(f"{info.name:<28} {format_size(info.size):>10}  {saved}")
        return 0

    progress = DownloadProgress()
    try:
        if args.command == "download":
            downloaded = system.ensure_artifacts(
                on_progress=_print_status,
                on_file_progress=progress.on_file_progress,
                on_file_complete=progress.on_file_complete,
            )
            print(f"Downloaded {len(downloaded)} file(s)")
            return 0

        text = args.text if args.text is not None else sys.stdin.read()
        system.ensure_artifacts(
            on_file_progress=progress.on_file_progress,
            on_file_complete=progress.on_file_complete,
        )
        print(system.translate(
            text,
            args.source,
            args.target,
            num_beams=args.num_beams,
            max_length=args.max_length,
        ))
        return 0
    finally:
        progress.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    system = TranslationSystem.from_settings(_settings_from_args(args))
    try:
        return _run(args, system)
    except (PocketMTError, ValueError, TypeError) as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
