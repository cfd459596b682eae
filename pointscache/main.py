#!/usr/bin/env python3
import argparse
import logging
import os
import sys
import time
import traceback

import trio

from pointscache.cache.request_cache import RequestCache
from pointscache.storage.persistence import FileStore, clear_stale_tmp_files
from pointscache.types import CacheConfiguration

logger = logging.getLogger(__name__)

_DEFAULTS = CacheConfiguration()

# Temp files younger than this may belong to a live writer sharing the store dir
STALE_TMP_AGE_SEC = 600


def _get_default_store_dir():
    # $POINTSCACHE_STORE_DIR, else something xdg compliant, else $HOME/.cache/pointscache
    store_dir = os.getenv("POINTSCACHE_STORE_DIR")
    if store_dir:
        return store_dir
    xdg_cache_home = os.getenv("XDG_CACHE_HOME")
    if xdg_cache_home:
        return os.path.join(xdg_cache_home, "pointscache")
    return os.path.expanduser("~/.cache/pointscache")


def add_cache_arguments(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--store-dir", default=_get_default_store_dir(), help="Directory holding cache snapshots"
    )
    parser.add_argument(
        "--persistence-key",
        default=_DEFAULTS.persistence_key,
        help="Snapshot key (app name + schema version)",
    )
    parser.add_argument(
        "--max-size-mb",
        type=float,
        default=_DEFAULTS.max_size_bytes / (1024 * 1024),
        help="Maximum in-memory cache size in MB",
    )
    parser.add_argument(
        "--default-ttl-sec",
        type=float,
        default=_DEFAULTS.default_ttl,
        help="TTL for entries stored without an explicit one",
    )
    parser.add_argument(
        "--no-lru", action="store_true", help="Evict in insertion order, ignoring reads"
    )


def config_from_args(args: argparse.Namespace) -> CacheConfiguration:
    return CacheConfiguration(
        max_size_bytes=int(args.max_size_mb * 1024 * 1024),
        default_ttl=args.default_ttl_sec,
        enable_persistence=True,
        persistence_key=args.persistence_key,
        lru_enabled=not args.no_lru,
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Inspect and maintain persisted request cache snapshots.")
    add_cache_arguments(parser)
    parser.add_argument("--debug", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "command",
        choices=["stats", "keys", "prune", "purge"],
        help="stats: print metrics; keys: list entries; prune: drop expired entries; purge: delete the snapshot",
    )
    return parser.parse_args(argv)


def setup_logging(debug_mode):
    level = logging.DEBUG if debug_mode else logging.INFO
    logging.basicConfig(
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s", level=level
    )
    if not debug_mode:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _print_keys(cache: RequestCache):
    now = time.time()
    for entry in cache.entries():
        remaining = entry.ttl - (now - entry.created_at)
        status = f"{remaining:.0f}s left" if remaining > 0 else "expired"
        tags = ",".join(sorted(entry.tags)) or "-"
        print(f"{entry.key}\t{entry.size_bytes} B\t{status}\t{tags}")


async def async_main(argv=None):
    args = parse_args(argv)
    setup_logging(args.debug)

    store_dir = os.path.abspath(args.store_dir)
    os.makedirs(store_dir, exist_ok=True, mode=0o700)
    clear_stale_tmp_files(store_dir, older_than=time.time() - STALE_TMP_AGE_SEC)

    store = FileStore(store_dir)
    config = config_from_args(args)

    if args.command == "purge":
        await store.remove(config.persistence_key)
        logging.info(f"Removed snapshot {config.persistence_key}")
        return

    cache = RequestCache(config, store=store)
    loaded = await cache.load_persisted()
    logging.info(f"Loaded {loaded} entries from {store_dir}")

    if args.command == "stats":
        for name, value in cache.get_metrics().items():
            print(f"{name}: {value}")
    elif args.command == "keys":
        _print_keys(cache)
    elif args.command == "prune":
        removed = cache.purge_expired()
        if not await cache.flush():
            logging.error("Failed to write pruned snapshot")
            sys.exit(1)
        logging.info(f"Pruned {removed} expired entries")


def cli_entry_point():
    try:
        trio.run(async_main)
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logging.critical(f"Fatal error: {e}\n{traceback.format_exc()}")
        sys.exit(1)


if __name__ == "__main__":
    cli_entry_point()
