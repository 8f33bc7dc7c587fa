"""Entry point for running mailfacts as a module.

Usage:
    python -m mailfacts validate-config
    python -m mailfacts --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from mailfacts.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
