"""Allow ``python -m agentic_shell``."""

from agentic_shell.cli import main

main()
