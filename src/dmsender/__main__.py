"""``python -m dmsender`` and the ``dmsender`` console script."""

from __future__ import annotations

from dmsender import App, __version__


def main() -> None:
    """Run the probe from the command line."""
    App(name="dmsender", version=__version__).cli()


if __name__ == "__main__":
    main()
