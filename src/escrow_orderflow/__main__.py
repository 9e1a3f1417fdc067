"""Allow ``python -m escrow_orderflow``."""

from escrow_orderflow.cli import app

if __name__ == "__main__":
    app()
