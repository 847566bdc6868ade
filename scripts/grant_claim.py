#!/usr/bin/env python3
"""Grant a claim to a registered user.

The DeleteTask claim is the only one the API checks; there is no endpoint for
granting it, so operators use this script.

Usage:
    python scripts/grant_claim.py --email user@example.com
    python scripts/grant_claim.py --email user@example.com --claim DeleteTask --value true

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Set to true to target the JSON-backed memory store under SHARED_FS_ROOT
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def grant_claim(email: str, claim_type: str, value: str, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from taskmanager.service.auth import normalize_email
    from taskmanager.service.runtime import get_runtime

    runtime = get_runtime()
    if dry_run:
        normalized = normalize_email(email)
        user = runtime.store.get_user_by_email(normalized) if normalized else None
        if not user:
            return {"email": email, "status": "not_found"}
        print(f"[DRY RUN] Would grant {claim_type}={value} to {email} (id: {user.id})")
        return {"user_id": user.id, "email": email, "status": "dry_run"}

    user = runtime.auth.grant_claim(email, claim_type, value)
    runtime.close()
    return {
        "user_id": user.id,
        "email": user.email,
        "status": "granted",
        "claims": [f"{c.type}={c.value}" for c in user.claims],
    }


def main():
    parser = argparse.ArgumentParser(
        description="Grant a claim to a task manager user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", required=True, help="Email of the registered user")
    parser.add_argument("--claim", default="DeleteTask", help="Claim type (default: DeleteTask)")
    parser.add_argument("--value", default="true", help="Claim value (default: true)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    try:
        result = grant_claim(args.email, args.claim, args.value, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "not_found":
        print(f"Error: no user registered with {args.email}")
        sys.exit(1)
    if result["status"] == "granted":
        print(f"Granted {args.claim} to {result['email']} (id: {result['user_id']})")
        print(f"  Claims: {', '.join(result['claims'])}")


if __name__ == "__main__":
    main()
