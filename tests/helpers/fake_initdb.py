"""Stand-in for ``initdb`` used by the lifecycle tests.

Usage:
    fake_initdb.py -D <data_dir> --auth=trust --nosync -U <user>

Creates *data_dir* with a ``PG_VERSION`` file and records its arguments in
``initdb_args.json`` inside it.

Environment:
    PGSANDBOX_FAKE_INITDB_EXIT: exit with this code instead (after printing
    an error), simulating a failed initdb.

Exit codes:
    0: cluster "created"
    1: data directory already exists and is not empty
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path


def main() -> None:
    parser = argparse.ArgumentParser(prog="initdb")
    parser.add_argument("-D", dest="data_dir", required=True)
    parser.add_argument("-U", dest="user", required=True)
    parser.add_argument("--auth", required=True)
    parser.add_argument("--nosync", action="store_true")
    args = parser.parse_args()

    exit_code = int(os.environ.get("PGSANDBOX_FAKE_INITDB_EXIT", "0"))
    if exit_code:
        print(f'initdb: error: could not create directory "{args.data_dir}"', file=sys.stderr)
        sys.exit(exit_code)

    data_dir = Path(args.data_dir)
    if data_dir.exists() and any(data_dir.iterdir()):
        print(f'initdb: error: directory "{data_dir}" exists but is not empty', file=sys.stderr)
        sys.exit(1)

    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "PG_VERSION").write_text("16\n")
    (data_dir / "initdb_args.json").write_text(
        json.dumps({"user": args.user, "auth": args.auth, "nosync": args.nosync})
    )
    print("Success. You can now start the database server.")


if __name__ == "__main__":
    main()
