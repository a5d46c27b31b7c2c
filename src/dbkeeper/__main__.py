"""Module entrypoint for ``python -m dbkeeper``."""

from __future__ import annotations

from dbkeeper.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
