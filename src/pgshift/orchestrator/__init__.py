"""
Online evolution workflows for pgshift.

This package provides:
- The workflow state machines and their ledger status mapping
- Move, migrate-and-rename, column removal and subpartition conversion
- Conversion to partitioning and partition maintenance
- The orchestrator that runs, cancels and resumes them
"""

from .base import CancelToken, Workflow, WorkflowContext, WorkflowParams, WorkflowResult
from .column_removal import ColumnRemovalWorkflow, RemoveColumnsParams
from .maintenance import PartitionAction, PartitionMaintenanceWorkflow, PartitionParams
from .migrate import MigrateParams, MigrateWorkflow
from .move import MoveParams, MoveWorkflow
from .partitioning import PartitionConversionParams, PartitionConversionWorkflow
from .state_machine import (
    COLUMN_REMOVAL_MACHINE,
    MIGRATE_MACHINE,
    MOVE_MACHINE,
    ONLINE_CONVERSION_MACHINE,
    PARTITION_MAINTENANCE_MACHINE,
    WorkflowMachine,
    WorkflowState,
)
from .statistics import AnalyzeAdvisor, StatisticsAdvisor
from .subpartition import ConvertParams, OnlineConversionWorkflow, RebuildConversionWorkflow
from .orchestrator import EvolutionOrchestrator

__all__ = [
    "CancelToken",
    "Workflow",
    "WorkflowContext",
    "WorkflowParams",
    "WorkflowResult",
    "ColumnRemovalWorkflow",
    "RemoveColumnsParams",
    "PartitionAction",
    "PartitionMaintenanceWorkflow",
    "PartitionParams",
    "MigrateParams",
    "MigrateWorkflow",
    "MoveParams",
    "MoveWorkflow",
    "PartitionConversionParams",
    "PartitionConversionWorkflow",
    "COLUMN_REMOVAL_MACHINE",
    "MIGRATE_MACHINE",
    "MOVE_MACHINE",
    "ONLINE_CONVERSION_MACHINE",
    "PARTITION_MAINTENANCE_MACHINE",
    "WorkflowMachine",
    "WorkflowState",
    "AnalyzeAdvisor",
    "StatisticsAdvisor",
    "ConvertParams",
    "OnlineConversionWorkflow",
    "RebuildConversionWorkflow",
    "EvolutionOrchestrator",
]
