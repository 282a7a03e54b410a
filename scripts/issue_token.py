from __future__ import annotations

import argparse
import sys

from edugov.services.auth.tokens import issue_session_token


def _build_parser() -> argparse.ArgumentParser:
    # Local stand-in for the identity facade when calling the API by hand.
    parser = argparse.ArgumentParser(description="Issue a session token for an existing principal")
    parser.add_argument("--user-id", required=True, help="Principal id (users.id)")
    parser.add_argument("--role", required=True, help="Role: member|instructor|admin")
    parser.add_argument("--tenant-id", type=int, default=None, help="Tenant id the principal belongs to")
    parser.add_argument("--ttl", type=int, default=None, help="Lifetime in seconds")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    try:
        token = issue_session_token(
            subject_id=args.user_id,
            role=args.role,
            tenant_id=args.tenant_id,
            ttl_s=args.ttl,
        )
    except (RuntimeError, ValueError) as exc:
        print(f"issue_token failed: {exc}", file=sys.stderr)
        return 1
    print(token)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
