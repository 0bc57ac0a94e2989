#!/usr/bin/env python3
"""Check marketplace invariants against a persisted state file.

Usage:
    python3 tools/check_invariants.py                # data/state.json
    python3 tools/check_invariants.py path/to/state.json
"""

import sys
from pathlib import Path

from nftmarket.market.invariants import check_invariants
from nftmarket.persistence.state_store import StateStore


ROOT = Path(__file__).resolve().parents[1]
DEFAULT_STATE = ROOT / "data" / "state.json"


def check(state_path: Path = DEFAULT_STATE) -> int:
    if not state_path.exists():
        print(f"No state file at {state_path}; nothing to check.")
        return 0

    store = StateStore(state_path)
    market = store.load_market()
    if market is None:
        print(f"{state_path} has no market section", file=sys.stderr)
        return 1

    errors = check_invariants(market, store.load_registry())
    if errors:
        for error in errors:
            print(f"VIOLATION: {error}", file=sys.stderr)
        return 1

    print(
        f"Invariant checks passed: {market.minted_count} minted, "
        f"{market.sold_count} sold."
    )
    return 0


if __name__ == "__main__":
    path = Path(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_STATE
    raise SystemExit(check(path))
