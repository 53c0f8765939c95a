"""
CLI module - the gaql-context command.

Provides entry points for:
- Inspecting and clearing cached embeddings
- Building all collections ahead of use
- Ad-hoc retrieval from the command line
"""

from gaql_context.cli.commands import (
    main,
    run_build_cli,
    run_clear_cli,
    run_retrieve_cli,
    run_status_cli,
)

__all__ = [
    "main",
    "run_status_cli",
    "run_clear_cli",
    "run_build_cli",
    "run_retrieve_cli",
]
