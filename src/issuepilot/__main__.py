from __future__ import annotations

from issuepilot.cli import main


if __name__ == "__main__":
    main()
