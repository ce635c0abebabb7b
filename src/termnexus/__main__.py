"""Module entrypoint for `python -m termnexus`."""

from termnexus.cli import run

if __name__ == "__main__":
    raise SystemExit(run())
