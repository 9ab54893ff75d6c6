"""SQLModel database models and tables."""

import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func


class WorkflowRecord(SQLModel, table=True):
    """Tenant-owned workflow definitions.

    Nodes and edges are stored as nested JSON on the row so a graph is
    always read atomically.
    """

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    tenant_id: str = Field(index=True, max_length=255)
    name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    status: str = Field(default="draft", max_length=20)  # draft | active | paused | archived
    trigger_type: str = Field(index=True, max_length=64)
    trigger_config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    nodes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    edges: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    is_active: bool = Field(default=False, index=True)
    run_once_per_lead: bool = Field(default=True)
    version: int = Field(default=1)

    # Stats
    runs_count: int = Field(default=0)
    completions_count: int = Field(default=0)
    failures_count: int = Field(default=0)
    last_run_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )

    def definition(self) -> Dict[str, Any]:
        """Raw graph definition (trigger + nodes + edges)."""
        return {
            "trigger": {"type": self.trigger_type, "config": self.trigger_config or {}},
            "nodes": self.nodes or [],
            "edges": self.edges or [],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "trigger": {"type": self.trigger_type, "config": self.trigger_config or {}},
            "nodes": self.nodes or [],
            "edges": self.edges or [],
            "is_active": self.is_active,
            "run_once_per_lead": self.run_once_per_lead,
            "version": self.version,
            "runs_count": self.runs_count,
            "completions_count": self.completions_count,
            "failures_count": self.failures_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ExecutionRecord(SQLModel, table=True):
    """Durable state of one workflow execution.

    run_once_key is unique and only set while a run-once execution is
    non-terminal, so the database rejects a second live execution for the
    same (workflow, lead).
    """

    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True, max_length=255)
    tenant_id: str = Field(index=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    workflow_version: int = Field(default=1)
    graph: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    lead_id: Optional[str] = Field(default=None, index=True, max_length=255)
    status: str = Field(default="running", index=True, max_length=20)
    context: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    node_results: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    frontier: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    wait_states: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=2000)
    pass_count: int = Field(default=0)
    run_once_key: Optional[str] = Field(default=None, unique=True, max_length=512)
    started_at: float = Field(index=True)  # Unix timestamp
    completed_at: Optional[float] = Field(default=None)
    updated_at: float = Field(index=True)


class CacheEntry(SQLModel, table=True):
    """Cache row for the SQLite backend; holds reputation state without Redis."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True, max_length=512)
    value: str = Field(max_length=1000000)  # JSON
    expires_at: Optional[float] = Field(default=None, index=True)
    created_at: float = Field(default_factory=time.time)
