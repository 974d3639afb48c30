"""Run the release-gate command line tool with `python -m release_gate`."""

from release_gate.tool.release_gate import main

if __name__ == "__main__":
    main()
