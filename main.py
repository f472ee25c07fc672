from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from partner_link.audit import InMemoryAuditStore, JsonAuditLogger
from partner_link.config import PartnerLinkConfig
from partner_link.models import Tenant
from partner_link.orchestrator import summarize
from partner_link.partner_link import validate_partner_id
from partner_link.tool import PartnerLinkTool


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Link a Partner ID to every accessible Microsoft Entra tenant")
    parser.add_argument("--config", help="Optional path to a configuration YAML")
    parser.add_argument(
        "--auth",
        choices=["interactive", "device-code"],
        default="interactive",
        help="Sign-in method",
    )
    parser.add_argument(
        "--operation",
        required=True,
        choices=["discover", "link", "unlink"],
        help="Operation to run",
    )
    parser.add_argument("--partner-id", help="Microsoft AI Cloud Partner Program ID to link")
    parser.add_argument(
        "--tenant-id",
        action="append",
        default=[],
        help="Restrict the operation to this tenant (repeatable)",
    )
    parser.add_argument(
        "--on-auth-failure",
        choices=["skip", "retry"],
        default="skip",
        help="What to do when a tenant needs MFA, consent or a slow sign-in",
    )
    parser.add_argument("--audit", action="store_true", help="Print collected audit events")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def _show_device_code(user_code: str, verification_url: str) -> None:
    print(f"To sign in, open {verification_url} and enter the code {user_code}", file=sys.stderr)


def _show_progress(completed: int, total: int, tenant: Tenant) -> None:
    print(f"[{completed}/{total}] {tenant.display_name or tenant.id}", file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, stream=sys.stderr)

    if args.operation == "link" and not validate_partner_id(args.partner_id):
        raise SystemExit("--partner-id must be a 6-10 digit Partner ID for linking")
    if args.operation == "unlink" and len(args.tenant_id) > 1:
        raise SystemExit("--operation unlink accepts at most one --tenant-id (defaults to the home tenant)")

    config = PartnerLinkConfig.load(args.config)
    audit_store = InMemoryAuditStore()
    tool = PartnerLinkTool(config, audit_logger=JsonAuditLogger(store=audit_store, stream=sys.stderr))
    skip = args.on_auth_failure == "skip"

    try:
        session = tool.auth.try_sign_in_silently()
        if not session.is_authenticated:
            if args.auth == "device-code":
                session = tool.auth.sign_in_with_device_code(_show_device_code)
            else:
                session = tool.auth.sign_in_interactive()
        if not session.is_authenticated:
            raise SystemExit("Sign-in failed")

        tenants = tool.discover(
            on_auth_failure=lambda tenant_id, kind, message: skip,
            tenant_ids=args.tenant_id,
        )

        if args.operation == "discover":
            result = {"tenants": [tenant.to_dict() for tenant in tenants]}
        else:
            if args.operation == "link":
                outcomes = tool.link_all(args.partner_id, tenants, progress=_show_progress)
            else:
                outcomes = [tool.unlink_one(tenants, args.tenant_id[0] if args.tenant_id else None)]
            summary = summarize(outcomes)
            result = {
                "outcomes": [outcome.to_dict() for outcome in outcomes],
                "succeeded": summary.succeeded,
                "total": summary.total,
            }
        if args.audit:
            events = audit_store.list(limit=len(audit_store), tenant_ids=args.tenant_id or None)
            result["audit"] = [event.to_dict() for event in events]
    finally:
        tool.close()

    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
