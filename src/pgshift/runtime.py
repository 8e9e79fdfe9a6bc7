"""
Wiring of pools, ledger and orchestrator from a ``PgshiftConfig``.
"""

import logging
from typing import Optional

from .config import PgshiftConfig
from .database import (
    RuntimePools,
    SchemaIntrospector,
    StatementExecutor,
    TableOperations,
)
from .descriptors.validator import DescriptorValidator
from .ledger import LedgerSchema, OperationLedger, PostgresLedgerStore
from .orchestrator import EvolutionOrchestrator
from .synthesis.engine import SynthesisEngine


logger = logging.getLogger(__name__)


def build_engine(config: PgshiftConfig) -> SynthesisEngine:
    """Synthesis engine honoring the configured identifier limit."""
    validator = DescriptorValidator(max_identifier_length=config.synthesis.max_identifier_length)
    return SynthesisEngine(validator=validator)


class Runtime:
    """Everything a command needs against a live database.

    The target database and the ledger get separate pools so ledger
    writes never wait behind workflow statements.
    """

    def __init__(self, config: PgshiftConfig):
        self.config = config
        self.engine = build_engine(config)
        self.pools: Optional[RuntimePools] = None

        self.ledger: Optional[OperationLedger] = None
        self.ledger_schema: Optional[LedgerSchema] = None
        self.introspector: Optional[SchemaIntrospector] = None
        self.operations: Optional[TableOperations] = None
        self.executor: Optional[StatementExecutor] = None
        self.orchestrator: Optional[EvolutionOrchestrator] = None

    async def start(self) -> "Runtime":
        service = self.config.service_name
        workflows = self.config.workflows
        schema_name = self.config.ledger.schema_name

        self.pools = RuntimePools(
            self.config.require_database().to_connection_config(service),
            self.config.ledger_database().to_connection_config(f"{service}-ledger"),
        )
        await self.pools.connect()
        target, ledger_pool = self.pools.target, self.pools.ledger

        self.ledger_schema = LedgerSchema(ledger_pool, schema_name)
        self.ledger = OperationLedger.from_config(
            PostgresLedgerStore(ledger_pool, schema_name), self.config.ledger
        )
        self.introspector = SchemaIntrospector(target)
        self.operations = TableOperations(
            target,
            lock_timeout_seconds=workflows.lock_timeout_seconds,
            statement_timeout_seconds=workflows.statement_timeout_seconds,
            checkpoint_schema=schema_name,
        )
        self.executor = StatementExecutor(target, self.ledger)
        self.orchestrator = EvolutionOrchestrator(
            self.ledger,
            self.operations,
            self.introspector,
            engine=self.engine,
            settings=workflows,
        )
        logger.info(f"Runtime ready (ledger schema {schema_name})")
        return self

    async def close(self) -> None:
        if self.pools is not None:
            await self.pools.close()

    async def __aenter__(self) -> "Runtime":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
