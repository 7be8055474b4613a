from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Allow running as a script (sys.path[0] becomes ./scripts). Add repo root.
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from agenda_watch.config import ConfigError, load_config, resolve_config_path
from agenda_watch.external import reset_failed_external_urls


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Clear failed external document fetches so the next run retries them")
    p.add_argument("--config", type=str, default=None, help="Path to config YAML (optional)")
    p.add_argument("--db", type=str, default=None, help="SQLite database path (overrides config)")
    p.add_argument("--like", type=str, default=None, help="Only reset URLs matching this SQL LIKE pattern")
    args = p.parse_args(argv)

    if args.db:
        db_path = Path(args.db)
    else:
        try:
            db_path = load_config(resolve_config_path(args.config)).database
        except ConfigError as e:
            print(str(e))
            return 2

    n = reset_failed_external_urls(db_path=db_path, like=args.like)
    print(f"Reset {n} failed url(s) in {db_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
