"""Allow running the CLI with ``python -m algaib``."""

from algaib.cli import main

if __name__ == "__main__":
    main()
