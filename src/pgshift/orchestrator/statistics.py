"""
Statistics refresh after structural changes.

Which statistics to gather, and when, is a policy decision made
elsewhere; workflows only call ``refresh`` once their change is in
place.
"""

import logging
from typing import Optional, Protocol

from ..database.operations import TableOperations
from ..synthesis.literals import qualify


logger = logging.getLogger(__name__)


class StatisticsAdvisor(Protocol):
    """Refreshes planner statistics for a table."""

    async def refresh(self, schema: str, table: str, parallel_degree: Optional[int] = None) -> None:
        ...


class AnalyzeAdvisor:
    """Runs ``ANALYZE`` on the table."""

    def __init__(self, operations: TableOperations):
        self.operations = operations

    async def refresh(self, schema: str, table: str, parallel_degree: Optional[int] = None) -> None:
        relation = qualify(table, schema)
        logger.debug(f"Refreshing statistics of {relation}")
        await self.operations.analyze(relation)
