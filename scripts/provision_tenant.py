from __future__ import annotations

import argparse
import asyncio
import json
import sys
from uuid import uuid4

from tenantforge.core.logging import configure_logging
from tenantforge.persistence.db import SessionLocal
from tenantforge.providers.identity.factory import get_identity_provider
from tenantforge.services.provisioning import ProvisioningCommand, ProvisioningOrchestrator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provision a tenant and its owner identity")
    parser.add_argument("--name", required=True, help="Tenant display name")
    parser.add_argument("--slug", required=True, help="Candidate slug (sanitized before use)")
    parser.add_argument("--owner-login", required=True, help="Owner email/login")
    parser.add_argument("--owner-name", required=True, help="Owner display name")
    parser.add_argument("--admin-id", default="cli", help="Admin id recorded on audit rows")
    parser.add_argument(
        "--idempotency-key",
        default=None,
        help="Reuse a key to replay a previous attempt; a new key is generated when omitted",
    )
    parser.add_argument(
        "--configuration",
        default="{}",
        help="JSON object of tenant configuration (features, timezone, currency, settings)",
    )
    return parser


async def _provision(args: argparse.Namespace) -> int:
    configuration = json.loads(args.configuration)
    if not isinstance(configuration, dict):
        raise ValueError("--configuration must be a JSON object")
    orchestrator = ProvisioningOrchestrator(SessionLocal, get_identity_provider())
    result = await orchestrator.provision(
        ProvisioningCommand(
            idempotency_key=args.idempotency_key or uuid4().hex,
            requesting_admin_id=args.admin_id,
            tenant_name=args.name,
            candidate_slug=args.slug,
            owner_login=args.owner_login,
            owner_display_name=args.owner_name,
            configuration=configuration,
        )
    )
    print(json.dumps({**result.to_response(), "replayed": result.replayed}, indent=2))
    return 0 if result.success else 2


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_provision(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"provision_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
