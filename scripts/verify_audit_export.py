#!/usr/bin/env python3
"""
Offline verifier for fiscal ledger audit exports.

Re-checks an exported chain without access to the ledger store: every
entry hash is recomputed from its fields and every link is followed from
the export's starting point (GENESIS, or the real predecessor when the
export covers a range). With the HMAC secret at hand the integrity
signatures are checked too.

Usage:
    python scripts/verify_audit_export.py export.json
    FISCAL_HMAC_SECRET=... python scripts/verify_audit_export.py export.json --secret-env FISCAL_HMAC_SECRET

Output:
    VALID: <n> entries verified
    INVALID: entry <id> at index <i> (<kind>): <reason>

Exit status: 0 valid, 1 broken chain, 2 unreadable input.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from fiscal_ledger.domain.models import GENESIS
from fiscal_ledger.hashing import entry_from_json_dict, verify_chain
from fiscal_ledger.signing import IntegritySigner


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify a fiscal ledger audit export offline.")
    parser.add_argument("export", type=Path, help="JSON file written from AuditExport.to_json_dict()")
    parser.add_argument(
        "--secret-env",
        metavar="NAME",
        help="environment variable holding the HMAC secret; signatures are skipped without it",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    try:
        data = json.loads(args.export.read_text(encoding="utf-8"))
        entries = [entry_from_json_dict(item) for item in data["entries"]]
    except FileNotFoundError as e:
        print(f"INVALID: file not found - {e.filename}", file=sys.stderr)  # noqa: T201
        return 2
    except (json.JSONDecodeError, KeyError, ValueError) as e:
        print(f"INVALID: unreadable export - {e}", file=sys.stderr)  # noqa: T201
        return 2

    verify_signature = None
    if args.secret_env:
        secret = os.environ.get(args.secret_env)
        if not secret:
            print(f"INVALID: {args.secret_env} is not set", file=sys.stderr)  # noqa: T201
            return 2
        verify_signature = IntegritySigner(secret.encode("utf-8")).verify_entry

    result = verify_chain(
        entries,
        verify_signature=verify_signature,
        expected_first_previous=data.get("expected_first_previous", GENESIS),
    )

    if result.valid:
        checked = "hashes, links and signatures" if verify_signature else "hashes and links"
        print(f"VALID: {result.total_entries} entries verified ({checked})")  # noqa: T201
        return 0

    kind = result.kind.value if result.kind else "unknown"
    print(  # noqa: T201
        f"INVALID: entry {result.entry_id} at index {result.broken_at_index} ({kind}): "
        f"{result.message}"
    )
    return 1


if __name__ == "__main__":
    sys.exit(main())
