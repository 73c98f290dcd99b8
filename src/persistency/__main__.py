"""Entry point: python -m persistency [init|check] [options]

- No args / "init": Bootstrap or refresh the persistency layer
- "check":          Exit non-zero when the layer is stale
"""

from __future__ import annotations

import sys


def _usage() -> None:
    print("Usage: python -m persistency [init|check] [options]")
    print("  init   — Bootstrap or refresh the persistency layer (default)")
    print("  check  — Report freshness; exit 1 when the layer is stale")


def main() -> None:
    argv = sys.argv[1:]
    cmd = argv[0] if argv and not argv[0].startswith("-") else "init"
    rest = argv[1:] if argv and argv[0] == cmd else argv

    from persistency.cli import run_check, run_init

    if cmd == "init":
        sys.exit(run_init(rest))
    elif cmd == "check":
        sys.exit(run_check(rest))
    elif cmd == "help":
        _usage()
    else:
        _usage()
        sys.exit(5)


if __name__ == "__main__":
    main()
