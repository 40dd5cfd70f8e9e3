"""Command line client running the proxy handlers in-process."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import httpx

from ..common.observability import configure_logging
from ..common.settings import ProxySettings
from ..proxy.errors import ProxyError
from ..proxy.service import BinaryPayload, ProxyService


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch reshaped asset data without running the proxy server")
    parser.add_argument("--log-level", default="WARNING", help="Log level for diagnostic output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    asset_parser = subparsers.add_parser("asset", help="Download an asset thumbnail as PNG")
    asset_parser.add_argument("asset_id", help="Asset id")
    asset_parser.add_argument("--output", type=Path, help="Destination file (default: <asset_id>.png)")

    info_parser = subparsers.add_parser("assetinfo", help="Show reshaped details for one asset")
    info_parser.add_argument("asset_id", help="Asset id")

    batch_parser = subparsers.add_parser("assetinfoz", help="Show reshaped details for up to 10 assets")
    batch_parser.add_argument("asset_ids", help="Comma-separated asset ids")

    version_parser = subparsers.add_parser("assetversionid", help="Resolve an asset version and its embedded ids")
    version_parser.add_argument("version_id", help="Asset version id")

    rbxm_parser = subparsers.add_parser("rbxm", help="Download the binary behind a URL-encoded content location")
    rbxm_parser.add_argument("location", help="URL-encoded content location")
    rbxm_parser.add_argument("--output", type=Path, help="Destination file (default: derived from the location)")

    users_parser = subparsers.add_parser("users", help="Look up users")
    users_parser.add_argument("user_ids", help="Comma-separated user ids")

    inventory_parser = subparsers.add_parser("inventory", help="List a user's aggregated inventory")
    inventory_parser.add_argument("user_id", help="User id")

    return parser.parse_args(argv)


async def run_command(args: argparse.Namespace, service: ProxyService) -> Any:
    command = args.command
    if command == "asset":
        return await service.thumbnail(args.asset_id)
    if command == "assetinfo":
        return await service.asset_info(args.asset_id)
    if command == "assetinfoz":
        return await service.asset_info_batch(args.asset_ids)
    if command == "assetversionid":
        return await service.asset_version(args.version_id)
    if command == "rbxm":
        return await service.relay_binary(args.location)
    if command == "users":
        return await service.users(args.user_ids)
    if command == "inventory":
        return await service.inventory(args.user_id)
    raise ValueError(f"Unknown command {command}")


def default_output(args: argparse.Namespace, payload: BinaryPayload) -> Path:
    if payload.filename:
        return Path(payload.filename)
    return Path(f"{args.asset_id}.png")


def emit(args: argparse.Namespace, result: Any) -> None:
    if isinstance(result, BinaryPayload):
        destination = args.output or default_output(args, result)
        destination.write_bytes(result.content)
        print(f"Wrote {len(result.content)} bytes to {destination}")
        return
    print(json.dumps(result, indent=2))


async def _run(args: argparse.Namespace, settings: ProxySettings) -> Any:
    async with httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds)) as client:
        service = ProxyService.build(settings, client)
        try:
            return await run_command(args, service)
        finally:
            await service.close()


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    settings = ProxySettings()
    configure_logging("rbxg.cli", args.log_level, json_output=False)
    try:
        result = asyncio.run(_run(args, settings))
    except ProxyError as exc:
        print(f"error ({exc.status_code}): {exc.detail}", file=sys.stderr)
        raise SystemExit(1) from exc
    emit(args, result)


if __name__ == "__main__":  # pragma: no cover - manual entry point
    main()
