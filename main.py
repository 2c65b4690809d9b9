"""Main entry point for pr-loop."""

from prloop.cli import app


def main() -> None:
    """Run the pr-loop CLI."""
    app()


if __name__ == "__main__":
    main()
