from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from counselflow.domain.models import ApiKey, Profile
from counselflow.persistence.db import SessionLocal
from counselflow.services.auth.api_keys import generate_api_key, normalize_admin_sub_role, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an API key for a profile")
    parser.add_argument("--role", required=True, help="Role: subscriber|employee|admin")
    parser.add_argument("--admin-role", default=None, help="Admin sub-role: super_admin|attorney_admin")
    parser.add_argument("--name", required=True, help="Key label for operators")
    parser.add_argument("--user-id", default=None, help="Existing profile id to attach")
    parser.add_argument("--email", default=None, help="Optional profile email")
    parser.add_argument("--full-name", default=None, help="Optional display name")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    admin_sub_role = normalize_admin_sub_role(args.admin_role) if role == "admin" else None
    if role == "admin" and admin_sub_role is None:
        raise ValueError("--admin-role is required for admin keys")
    user_id = args.user_id or str(uuid4())
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    async with SessionLocal() as session:
        profile = await session.get(Profile, user_id)
        if profile is None:
            profile = Profile(
                id=user_id,
                email=args.email,
                full_name=args.full_name,
                role=role,
                admin_sub_role=admin_sub_role,
            )
            session.add(profile)
        else:
            profile.role = role
            profile.admin_sub_role = admin_sub_role
            if args.email:
                profile.email = args.email
            if args.full_name:
                profile.full_name = args.full_name
        # Flush the profile row before inserting the key to satisfy FK constraints.
        await session.flush()
        session.add(
            ApiKey(
                id=key_id,
                profile_id=profile.id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=args.name,
            )
        )
        await session.commit()

    print("API key created:")
    print(f"  profile_id: {user_id}")
    print(f"  key_id: {key_id}")
    print(f"  key_prefix: {key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
