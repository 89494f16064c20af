"""Entry point for running the classifier as a module.

Usage:
    python -m graphclassifier validate-config
    python -m graphclassifier --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from graphclassifier.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
