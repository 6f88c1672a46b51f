"""Allow ``python -m docrag.cli`` execution."""

from docrag.cli.main import main

main()
