"""CLI for LinkPeek."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from linkpeek.config import get_settings
from linkpeek.fetch import SafeFetcher
from linkpeek.unfurl import FetchFailed, SSRFBlocked, UnfurlEngine, Unfurled, ValidationFailed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="linkpeek", description="SSRF-safe link unfurling")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log fetch progress")
    sub = parser.add_subparsers(dest="command", required=True)

    unfurl_cmd = sub.add_parser("unfurl", help="Fetch a page and print its preview metadata")
    unfurl_cmd.add_argument("url", help="Target URL")
    unfurl_cmd.add_argument("--json", action="store_true", help="Print full JSON output")
    return parser


async def _run_unfurl(args: argparse.Namespace, engine: UnfurlEngine | None = None) -> int:
    engine = engine or UnfurlEngine(SafeFetcher.from_settings(get_settings()))
    outcome = await engine.attempt(args.url)

    if isinstance(outcome, ValidationFailed):
        print(f"error: {outcome.message}", file=sys.stderr)
        return 2
    if isinstance(outcome, SSRFBlocked):
        print(f"error: blocked ({outcome.reason})", file=sys.stderr)
        return 2
    if isinstance(outcome, FetchFailed):
        print(f"error: {outcome.message}", file=sys.stderr)
        return 2

    if not isinstance(outcome, Unfurled):
        raise TypeError(f"Unhandled unfurl outcome {outcome!r}")

    data = outcome.result.to_dict()
    if args.json:
        print(json.dumps(data, indent=2, ensure_ascii=False))
    else:
        print(f"{data['title'] or '(no title)'} <{data['url']}>")
        if data["description"]:
            print(data["description"])
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "unfurl":
        raise SystemExit(asyncio.run(_run_unfurl(args)))
