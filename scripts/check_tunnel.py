"""Open the configured SSH tunnel and run a trivial query through the pool."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sshdatasource.config import CONFIG_FILE, load_config
from sshdatasource.datasource import open_data_source
from sshdatasource.models import EngineKind
from sshdatasource.pool import PoolError
from sshdatasource.ports import PortExhaustionError
from sshdatasource.tunnels import SshSessionError

PROBE_QUERIES = {
    EngineKind.MYSQL: "SELECT 1",
    EngineKind.MSSQL: "SELECT 1",
    EngineKind.ORACLE: "SELECT 1 FROM dual",
    EngineKind.POSTGRESQL: "SELECT 1",
}


def probe(path: Path) -> int:
    config = load_config(path)
    if config is None:
        print(f"No usable config at {path}.")
        return 1
    try:
        source = open_data_source(config)
    except (SshSessionError, PortExhaustionError, FileNotFoundError) as exc:
        print(f"Tunnel failed: {exc}")
        return 1
    with source:
        print(f"Tunnel ready: {source.binding}")
        print(f"Connection string: {source.url}")
        try:
            with source.connection() as conn:
                cursor = conn.cursor()
                cursor.execute(PROBE_QUERIES[config.target.engine])
                print(f"Probe returned {cursor.fetchone()!r}")
                cursor.close()
        except PoolError as exc:
            print(f"Database unreachable through tunnel: {exc}")
            return 1
    return 0


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", type=Path, default=CONFIG_FILE, help="Config file to load")
    parser.add_argument("--verbose", action="store_true", help="Log tunnel activity")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    return probe(args.config)


if __name__ == "__main__":
    raise SystemExit(main())
