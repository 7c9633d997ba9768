"""CLI for running a single search manually against the configured backends."""
from __future__ import annotations

import argparse
import asyncio
import json

from apm_hub.config import Settings
from apm_hub.log_setup import setup_logging
from apm_hub.models import SearchParams
from apm_hub.search.aggregator import Aggregator
from apm_hub.search.registry import BackendRegistry
from apm_hub.search_backends.factory import load_backends, load_config_files


def parse_labels(values: list[str]) -> dict[str, str]:
    labels: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep:
            raise SystemExit(f"invalid label {item!r}, expected key=value")
        labels[key] = value
    return labels


async def main():
    parser = argparse.ArgumentParser(description="Search logs across configured backends")
    parser.add_argument("config", nargs="*", help="backend config files (default: APM_HUB_CONFIG_FILES)")
    parser.add_argument("--type", default="")
    parser.add_argument("--id", default="")
    parser.add_argument("--label", action="append", default=[], help="key=value, repeatable")
    parser.add_argument("--query", default="")
    parser.add_argument("--start", default="")
    parser.add_argument("--end", default="")
    parser.add_argument("--limit", type=int, default=0)
    args = parser.parse_args()

    settings = Settings()
    setup_logging(settings.log_level)
    registry = BackendRegistry(
        load_backends(load_config_files(args.config or settings.get_config_files()), settings)
    )
    aggregator = Aggregator(registry, timeout=settings.get_backend_timeout())
    params = SearchParams(
        type=args.type,
        id=args.id,
        labels=parse_labels(args.label),
        query=args.query,
        start=args.start,
        end=args.end,
        limit=args.limit,
    )
    results = await aggregator.search(params)
    print(json.dumps(results.model_dump(by_alias=True, exclude_none=True), indent=2))


if __name__ == "__main__":
    asyncio.run(main())
