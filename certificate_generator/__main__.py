"""Module entrypoint for running the certificate API server."""

from __future__ import annotations

import logging
import sys

from .config import HOST, LOG_LEVEL, PORT
from .errors import DependencyError


def main() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        from .server import run

        run(HOST, PORT)
    except DependencyError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc
    except ModuleNotFoundError as exc:
        print(f"Missing dependency '{exc.name}'. Install project dependencies with 'pip install -e .'.", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
