"""Allow running as `python -m proxysieve`."""

from proxysieve.main import cli

if __name__ == "__main__":
    cli()
