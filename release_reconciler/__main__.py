"""Run the release-reconciler command line tool with `python -m release_reconciler`."""

from release_reconciler.tool.reconciler_cli import main

if __name__ == "__main__":
    main()
