#!/usr/bin/env python3
"""
Impact Ledger Management CLI

Commands:
- generate-keys: Generate a system signing keypair
- show-policies: Print the policy set a new ledger would be seeded with
- verify-events: Verify an exported audit stream (chain and signatures)
- replay: Rebuild ledger state from an exported audit stream

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage generate-keys
    python -m tools.manage show-policies --file my_policies.json
    python -m tools.manage verify-events events.json --public-key <base64>
    python -m tools.manage replay events.json

Exported streams are the JSON body of GET /events, or a bare list of events.
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def load_event_file(path: str) -> tuple[list, str | None]:
    """
    Read an exported audit stream.

    Returns:
        (events, public_key) where public_key is the key recorded in the
        export, if any.
    """
    from impactledger.schemas import AuditEvent

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        raw_events = data.get("events", [])
        recorded_key = data.get("public_key")
    else:
        raw_events = data
        recorded_key = None

    return [AuditEvent.model_validate(raw) for raw in raw_events], recorded_key


def cmd_generate_keys(args):
    """Generate a system signing keypair."""
    from impactledger.core import Signer

    private_key, public_key = Signer.generate_keypair()

    print("[OK] System keypair generated")
    print(f"\n  Public key (for verification):")
    print(f"  {public_key}")
    print(f"\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set these environment variables:")
    print(f"  IMPACTLEDGER_SYSTEM_PRIVATE_KEY={private_key}")
    print(f"  IMPACTLEDGER_SYSTEM_PUBLIC_KEY={public_key}")


def cmd_show_policies(args):
    """Print the policy set from the policy file."""
    from impactledger.reference.loader import PolicyFileError, load_policy_file, policy_to_json

    try:
        policies = load_policy_file(args.file)
    except PolicyFileError as e:
        print(f"[FAIL] {e}")
        return 1

    if args.json:
        print(json.dumps(
            {category: policy_to_json(policy) for category, policy in policies.items()},
            indent=2,
        ))
        return 0

    for category, policy in policies.items():
        print(f"{category}{'' if policy.is_known else ' (inert)'}")
        print(f"  Range: [{policy.min_value}, {policy.max_value}]"
              f"{' (negative allowed)' if policy.allow_negative else ''}")
        print(f"  Max age: {policy.max_age}")
        print(f"  Units: {', '.join(sorted(policy.allowed_units)) or '-'}")
        print(f"  Methodologies: {', '.join(sorted(policy.allowed_methodologies)) or '-'}")
        print(f"  Evidence types: {', '.join(sorted(policy.required_evidence_types)) or '-'}")
    return 0


def cmd_verify_events(args):
    """Verify chain linkage, hashes and (with --public-key) signatures."""
    from impactledger.core import ChainError, ImpactLedger

    events, recorded_key = load_event_file(args.file)
    events.sort(key=lambda e: e.sequence_number)
    print(f"Loaded {len(events)} events from {args.file}")

    try:
        ImpactLedger.verify_event_chain(events, public_key=args.public_key)
    except ChainError as e:
        print(f"[FAIL] Chain verification FAILED: {e}")
        return 1

    print("[OK] Chain integrity verified OK")
    if events:
        print(f"  Chain head: {events[-1].event_hash[:16]}...")
    if args.public_key:
        print("  Signatures: [OK] Valid for the given public key")
    else:
        print("  Signatures: [WARN] Not checked (pass --public-key)")
        if recorded_key:
            print(f"  Export claims public key: {recorded_key}")
    return 0


def cmd_replay(args):
    """Rebuild ledger state from an exported stream and print a summary."""
    from impactledger.core import ChainError, ImpactLedger, SigningService
    from impactledger.schemas import Role

    events, _ = load_event_file(args.file)

    try:
        ledger = ImpactLedger.load_from_events(
            events,
            verify=True,
            public_key=args.public_key,
            signing_service=SigningService.ephemeral(),
        )
    except ChainError as e:
        print(f"[FAIL] Replay aborted: {e}")
        return 1

    claims = ledger.list_claims()
    verified = sum(1 for c in claims if c.verified)

    print(f"[OK] Replayed {ledger.event_count} events")
    print(f"  Chain head: {ledger.last_event_hash[:16] + '...' if ledger.last_event_hash else 'None'}")
    print(f"\nClaims: {len(claims)} ({verified} verified, {len(claims) - verified} pending)")
    print(f"Admins: {', '.join(sorted(ledger.access.members(Role.ADMIN))) or '-'}")
    print(f"Validators: {', '.join(sorted(ledger.access.members(Role.VALIDATOR))) or '-'}")
    print("\nPolicies:")
    for category, policy in ledger.list_policies().items():
        state = "known" if policy.is_known else "inert"
        print(f"  {category}: {state}, max_age={policy.max_age}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Impact Ledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # generate-keys
    subparsers.add_parser(
        "generate-keys",
        help="Generate a system signing keypair"
    )

    # show-policies
    p_policies = subparsers.add_parser(
        "show-policies",
        help="Print the seed policy set"
    )
    p_policies.add_argument("--file", "-f", help="Policy file (default: bundled policies.json)")
    p_policies.add_argument("--json", action="store_true", help="Print as JSON")

    # verify-events
    p_verify = subparsers.add_parser(
        "verify-events",
        help="Verify an exported audit stream"
    )
    p_verify.add_argument("file", help="Exported events JSON")
    p_verify.add_argument("--public-key", help="System public key to check signatures against")

    # replay
    p_replay = subparsers.add_parser(
        "replay",
        help="Rebuild ledger state from an exported audit stream"
    )
    p_replay.add_argument("file", help="Exported events JSON")
    p_replay.add_argument("--public-key", help="Also verify signatures against this key")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "generate-keys": cmd_generate_keys,
        "show-policies": cmd_show_policies,
        "verify-events": cmd_verify_events,
        "replay": cmd_replay,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
