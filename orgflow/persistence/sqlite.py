"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import (
    ApprovalRecord,
    Delegation,
    Escalation,
    InstanceState,
    StepInstance,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
)
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Each record is stored as a JSON document next to the columns used for
    filtering. ``seq`` preserves insertion order for newest-first listings.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                code TEXT NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS instances (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                definition_id TEXT NOT NULL,
                initiator_id TEXT NOT NULL,
                state TEXT NOT NULL,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS steps (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                status TEXT NOT NULL,
                revision INTEGER NOT NULL DEFAULT 0,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS delegations (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                instance_id TEXT NOT NULL,
                step_instance_id TEXT NOT NULL,
                from_user_id TEXT NOT NULL,
                to_user_id TEXT NOT NULL,
                is_active INTEGER NOT NULL,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS escalations (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                instance_id TEXT NOT NULL,
                step_instance_id TEXT NOT NULL,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS approvals (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                step_instance_id TEXT NOT NULL,
                data TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_steps_instance ON steps (instance_id);
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _executemany(self, query: str, rows: list[tuple]) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.executemany(query, rows)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _where(clauses: list[str]) -> str:
        return f" WHERE {' AND '.join(clauses)}" if clauses else ""

    # ------------------------------------------------------------------
    # Definitions
    async def create_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO definitions (id, code, deleted, data) VALUES (?, ?, ?, ?)",
            definition.id,
            definition.code,
            int(definition.deleted_at is not None),
            definition.model_dump_json(),
        )

    async def update_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE definitions SET code = ?, deleted = ?, data = ? WHERE id = ?",
            definition.code,
            int(definition.deleted_at is not None),
            definition.model_dump_json(),
            definition.id,
        )

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM definitions WHERE id = ?", definition_id
        )
        return WorkflowDefinition.model_validate_json(row["data"]) if row else None

    async def list_definitions(
        self, include_deleted: bool = False
    ) -> list[WorkflowDefinition]:
        query = "SELECT data FROM definitions"
        if not include_deleted:
            query += " WHERE deleted = 0"
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY seq DESC")
        return [WorkflowDefinition.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(self, instance: WorkflowInstance) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO instances (id, definition_id, initiator_id, state, data) VALUES (?, ?, ?, ?, ?)",
            instance.id,
            instance.definition_id,
            instance.initiator_id,
            instance.state.value,
            instance.model_dump_json(),
        )

    async def update_instance(self, instance: WorkflowInstance) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE instances SET state = ?, data = ? WHERE id = ?",
            instance.state.value,
            instance.model_dump_json(),
            instance.id,
        )

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM instances WHERE id = ?", instance_id
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def list_instances(
        self,
        definition_id: Optional[str] = None,
        initiator_id: Optional[str] = None,
        states: Optional[Iterable[InstanceState]] = None,
    ) -> list[WorkflowInstance]:
        clauses: list[str] = []
        params: list[Any] = []
        if definition_id:
            clauses.append("definition_id = ?")
            params.append(definition_id)
        if initiator_id:
            clauses.append("initiator_id = ?")
            params.append(initiator_id)
        if states is not None:
            values = [InstanceState(s).value for s in states]
            if not values:
                return []
            clauses.append(f"state IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM instances" + self._where(clauses) + " ORDER BY seq DESC",
            *params,
        )
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Steps
    async def create_steps(self, steps: list[StepInstance]) -> None:
        await asyncio.to_thread(
            self._executemany,
            "INSERT INTO steps (id, instance_id, step_index, status, revision, data) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (s.id, s.instance_id, s.step_index, s.status.value, s.revision, s.model_dump_json())
                for s in steps
            ],
        )

    async def get_step(self, step_id: str) -> StepInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM steps WHERE id = ?", step_id
        )
        return StepInstance.model_validate_json(row["data"]) if row else None

    async def list_steps(self, instance_id: str) -> list[StepInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM steps WHERE instance_id = ? ORDER BY step_index",
            instance_id,
        )
        return [StepInstance.model_validate_json(r["data"]) for r in rows]

    async def update_step(self, step: StepInstance) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE steps SET status = ?, revision = ?, data = ? WHERE id = ?",
            step.status.value,
            step.revision,
            step.model_dump_json(),
            step.id,
        )

    def _transition(
        self, step: StepInstance, expected: StepStatus, approval: Optional[ApprovalRecord]
    ) -> bool:
        stored = step.model_copy(update={"revision": step.revision + 1})
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "UPDATE steps SET status = ?, revision = ?, data = ? "
                "WHERE id = ? AND status = ? AND revision = ?",
                (
                    stored.status.value,
                    stored.revision,
                    stored.model_dump_json(),
                    step.id,
                    StepStatus(expected).value,
                    step.revision,
                ),
            )
            if cur.rowcount != 1:
                self._conn.rollback()
                return False
            if approval is not None:
                cur.execute(
                    "INSERT INTO approvals (step_instance_id, data) VALUES (?, ?)",
                    (approval.step_instance_id, approval.model_dump_json()),
                )
            self._conn.commit()
        step.revision = stored.revision
        return True

    async def transition_step(
        self,
        step: StepInstance,
        expected: StepStatus,
        approval: Optional[ApprovalRecord] = None,
    ) -> bool:
        return await asyncio.to_thread(self._transition, step, expected, approval)

    # ------------------------------------------------------------------
    # Delegations / escalations
    async def create_delegation(self, delegation: Delegation) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO delegations
                (id, instance_id, step_instance_id, from_user_id, to_user_id, is_active, data)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            delegation.id,
            delegation.instance_id,
            delegation.step_instance_id,
            delegation.from_user_id,
            delegation.to_user_id,
            int(delegation.is_active),
            delegation.model_dump_json(),
        )

    async def update_delegation(self, delegation: Delegation) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE delegations SET is_active = ?, data = ? WHERE id = ?",
            int(delegation.is_active),
            delegation.model_dump_json(),
            delegation.id,
        )

    async def get_delegation(self, delegation_id: str) -> Delegation | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM delegations WHERE id = ?", delegation_id
        )
        return Delegation.model_validate_json(row["data"]) if row else None

    async def list_delegations(
        self,
        step_instance_id: Optional[str] = None,
        from_user_id: Optional[str] = None,
        to_user_id: Optional[str] = None,
        active: Optional[bool] = None,
        instance_id: Optional[str] = None,
    ) -> list[Delegation]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("step_instance_id", step_instance_id),
            ("from_user_id", from_user_id),
            ("to_user_id", to_user_id),
            ("instance_id", instance_id),
        ):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if active is not None:
            clauses.append("is_active = ?")
            params.append(int(active))
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM delegations" + self._where(clauses) + " ORDER BY seq DESC",
            *params,
        )
        return [Delegation.model_validate_json(r["data"]) for r in rows]

    async def create_escalation(self, escalation: Escalation) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO escalations (id, instance_id, step_instance_id, data) VALUES (?, ?, ?, ?)",
            escalation.id,
            escalation.instance_id,
            escalation.step_instance_id,
            escalation.model_dump_json(),
        )

    async def list_escalations(
        self,
        step_instance_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> list[Escalation]:
        clauses: list[str] = []
        params: list[Any] = []
        if step_instance_id:
            clauses.append("step_instance_id = ?")
            params.append(step_instance_id)
        if instance_id:
            clauses.append("instance_id = ?")
            params.append(instance_id)
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM escalations" + self._where(clauses) + " ORDER BY seq DESC",
            *params,
        )
        return [Escalation.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Approvals
    async def add_approval(self, approval: ApprovalRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO approvals (step_instance_id, data) VALUES (?, ?)",
            approval.step_instance_id,
            approval.model_dump_json(),
        )

    async def list_approvals(self, step_instance_id: str) -> list[ApprovalRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM approvals WHERE step_instance_id = ? ORDER BY seq",
            step_instance_id,
        )
        return [ApprovalRecord.model_validate_json(r["data"]) for r in rows]
