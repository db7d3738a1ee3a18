#!/usr/bin/env python3
"""Emit SQL that provisions (or revokes) a task board API key."""

from __future__ import annotations

import argparse
import hashlib
import secrets

KEY_PREFIX = "ab_"


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_insert_sql(*, api_key: str, email: str | None) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    email_value = _quote_sql(email) if email else "null"

    return f"""-- Task board API key bootstrap SQL
-- Key: {api_key}
-- Only the hash below is stored; keep the key somewhere safe.

insert into api_keys (key_hash, email, ip_address)
values ({_quote_sql(key_hash)}, {email_value}, 'bootstrap')
on conflict (key_hash) do nothing;
"""


def render_revoke_sql(*, api_key: str) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    return f"""-- Task board API key revocation SQL

update api_keys
set revoked_at = now()
where key_hash = {_quote_sql(key_hash)}
  and revoked_at is null;
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to provision or revoke a task board API key.")
    parser.add_argument("--key", help="Existing key to register; a fresh one is generated when omitted")
    parser.add_argument("--email", help="Contact email stored next to the key")
    parser.add_argument("--revoke", action="store_true", help="Revoke --key instead of inserting it")
    args = parser.parse_args()

    if args.revoke:
        if not args.key:
            parser.error("--revoke requires --key")
        print(render_revoke_sql(api_key=args.key))
        return

    api_key = args.key or KEY_PREFIX + secrets.token_hex(24)
    print(render_insert_sql(api_key=api_key, email=args.email))


if __name__ == "__main__":
    main()
