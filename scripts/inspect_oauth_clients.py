#!/usr/bin/env python3
"""Print the OAuth web clients resolved from the current configuration.

Usage:
    # Uses the same environment / .env as the service:
    python scripts/inspect_oauth_clients.py

    # Also fetch the discovery document and show the token endpoint:
    python scripts/inspect_oauth_clients.py --discover

    # Machine-readable output:
    python scripts/inspect_oauth_clients.py --json

Secrets are always masked.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def mask_secret(secret: str) -> str:
    if len(secret) <= 4:
        return "****"
    return secret[:2] + "****" + secret[-2:]


async def describe_directory(directory, discover: bool = False) -> dict:
    """Summarize a ClientDirectory as plain data."""
    report = {
        "clients": [
            {
                "id": client.id,
                "secret": mask_secret(client.secret),
                "redirect_uris": list(client.redirect_uris),
                "allowed_origins": list(client.allowed_origins),
            }
            for client in directory.list_clients()
        ],
        "allowed_client_ids": directory.allowed_client_ids(),
    }
    if discover:
        document = await directory.get_discovery()
        report["issuer"] = document.issuer
        report["token_endpoint"] = document.token_endpoint
    return report


def _print_report(report: dict) -> None:
    if not report["clients"]:
        print("No OAuth web clients configured.")
    for client in report["clients"]:
        print(f"Client {client['id']} (secret {client['secret']})")
        for uri in client["redirect_uris"]:
            print(f"  redirect: {uri}")
        for origin in client["allowed_origins"]:
            print(f"  origin:   {origin}")
    print("Accepted audiences: " + (", ".join(report["allowed_client_ids"]) or "(any)"))
    if "token_endpoint" in report:
        print(f"Issuer: {report['issuer']}")
        print(f"Token endpoint: {report['token_endpoint'] or '(missing)'}")


def main():
    parser = argparse.ArgumentParser(
        description="Inspect resolved OAuth client configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--discover",
        action="store_true",
        help="Fetch the OIDC discovery document from OAUTH_ISSUER",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON",
    )
    args = parser.parse_args()

    # Import here so .env and environment are read at run time
    from authgate.config import get_settings
    from authgate.service.clients import ClientDirectory
    from authgate.service.errors import ServiceError

    directory = ClientDirectory(get_settings())
    try:
        report = asyncio.run(describe_directory(directory, discover=args.discover))
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        _print_report(report)


if __name__ == "__main__":
    main()
