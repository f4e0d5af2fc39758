"""Entry point for running helm-sync as a module."""

from .tool.helm_sync import main

if __name__ == "__main__":
    main()
