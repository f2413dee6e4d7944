"""Module entry point: python -m dwell_track ..."""

from __future__ import annotations

from dwell_track.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
