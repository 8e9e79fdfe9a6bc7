"""
DDL synthesis for pgshift.

This package provides:
- The synthesis engine rendering each table kind to PostgreSQL DDL
- Bulk, clone and subpartition-conversion generation
- Step scripts with printing, saving and summaries
- Statement builders and dry-run plans for structural changes
"""

from .engine import ConversionMode, SynthesisEngine
from .evolution import plan_migrate, plan_move, plan_remove_columns
from .literals import qualify, quote_ident, render_literal
from .steps import (
    DDLScript,
    DDLStep,
    ScriptBuilder,
    StatementText,
    print_script,
    save_to_file,
    split_statements,
    summarize,
)

__all__ = [
    "ConversionMode",
    "SynthesisEngine",
    "plan_migrate",
    "plan_move",
    "plan_remove_columns",
    "qualify",
    "quote_ident",
    "render_literal",
    "DDLScript",
    "DDLStep",
    "ScriptBuilder",
    "StatementText",
    "print_script",
    "save_to_file",
    "split_statements",
    "summarize",
]
