from __future__ import annotations

from smithers.commands import main


if __name__ == "__main__":
    raise SystemExit(main())
