#!/usr/bin/env python3
"""Run one instruction through the coordinator and print the result."""
import argparse
import asyncio
import json
import sys

from agent_service.coordinator import build_coordinator
from agent_service.logging_setup import close_logging, setup_logging


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Process a natural-language instruction against the entity store")
    parser.add_argument("instruction", nargs="+", help="instruction text")
    parser.add_argument("--json", action="store_true", help="print the full result as JSON")
    parser.add_argument("--log-level", default=None, help="override LOG_LEVEL")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(level=args.log_level)
    coordinator = build_coordinator()
    try:
        result = await coordinator.process(" ".join(args.instruction))
    finally:
        await coordinator.aclose()
        close_logging()

    if args.json:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        print(result.result)
        if result.error:
            print(f"\nerror: {result.error}", file=sys.stderr)
    return 0 if result.success else 1


if __name__ == '__main__':
    sys.exit(asyncio.run(main()))
