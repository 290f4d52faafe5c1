"""Administration of workflow definitions."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .contracts import DefinitionStatus, WorkflowDefinition, utcnow
from .errors import DefinitionNotFound, DuplicateCode, InvalidTransition
from .persistence import WorkflowRepository
from .validation import ACTIVE_INSTANCE_STATES, validate_definition

logger = logging.getLogger(__name__)

# Fields callers may not overwrite through ``update``
_PROTECTED_FIELDS = {"id", "version", "created_by", "created_at", "deleted_at"}


class DefinitionService:
    """Create, edit and move workflow definitions through their statuses.

    When a scheduler is supplied, every status change re-registers (or
    stops) the definition's cron timer.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        scheduler: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self.scheduler = scheduler
        self._clock = clock

    async def _ensure_unique_code(self, code: str, exclude_id: Optional[str] = None) -> None:
        for existing in await self._repository.list_definitions():
            if existing.code == code and existing.id != exclude_id:
                raise DuplicateCode(code)

    async def _save(self, definition: WorkflowDefinition, user_id: Optional[str]) -> WorkflowDefinition:
        definition.modified_by = user_id
        definition.updated_at = self._clock()
        await self._repository.update_definition(definition)
        if self.scheduler is not None:
            await self.scheduler.refresh(definition)
        return definition

    # ------------------------------------------------------------------
    async def create(
        self,
        data: Union[WorkflowDefinition, Mapping[str, Any]],
        user_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        if isinstance(data, WorkflowDefinition):
            definition = data.model_copy(deep=True)
        else:
            definition = WorkflowDefinition.model_validate(dict(data))
        await self._ensure_unique_code(definition.code)

        now = self._clock()
        definition.created_by = definition.created_by or user_id
        definition.modified_by = user_id
        definition.created_at = now
        definition.updated_at = now
        await self._repository.create_definition(definition)
        logger.info(f"Workflow created: {definition.id} ({definition.code})")
        if self.scheduler is not None and definition.is_active:
            await self.scheduler.refresh(definition)
        return definition

    async def get(self, definition_id: str) -> WorkflowDefinition:
        definition = await self._repository.get_definition(definition_id)
        if definition is None or definition.deleted_at is not None:
            raise DefinitionNotFound(definition_id)
        return definition

    async def get_by_code(self, code: str) -> WorkflowDefinition:
        for definition in await self._repository.list_definitions():
            if definition.code == code:
                return definition
        raise DefinitionNotFound(code)

    async def find(self, id_or_code: str) -> WorkflowDefinition:
        """Look a definition up by id, falling back to its code."""
        try:
            return await self.get(id_or_code)
        except DefinitionNotFound:
            return await self.get_by_code(id_or_code)

    async def list(
        self,
        status: Optional[DefinitionStatus] = None,
        category: Optional[str] = None,
        is_template: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[WorkflowDefinition]:
        """Definitions that are not deleted, newest first."""
        needle = search.lower() if search else None
        result = []
        for definition in await self._repository.list_definitions():
            if status is not None and definition.status != status:
                continue
            if category is not None and definition.category != category:
                continue
            if is_template is not None and definition.is_template != is_template:
                continue
            if needle and not any(
                needle in (value or "").lower()
                for value in (definition.name, definition.code, definition.description)
            ):
                continue
            result.append(definition)
        return result

    async def update(
        self, definition_id: str, changes: Mapping[str, Any], user_id: Optional[str] = None
    ) -> WorkflowDefinition:
        current = await self.get(definition_id)
        if current.status == DefinitionStatus.ACTIVE:
            raise InvalidTransition(
                "Cannot modify active workflow. Please deactivate it first."
            )
        changes = {k: v for k, v in changes.items() if k not in _PROTECTED_FIELDS}
        if "code" in changes and changes["code"] != current.code:
            await self._ensure_unique_code(changes["code"], exclude_id=current.id)

        updated = WorkflowDefinition.model_validate(
            {**current.model_dump(), **changes, "version": current.version + 1}
        )
        await self._save(updated, user_id)
        logger.info(f"Workflow updated: {definition_id} (version {updated.version})")
        return updated

    async def activate(self, definition_id: str, user_id: Optional[str] = None) -> WorkflowDefinition:
        definition = await self.get(definition_id)
        if definition.status == DefinitionStatus.ACTIVE:
            raise InvalidTransition("Workflow is already active")
        validate_definition(definition)
        definition.status = DefinitionStatus.ACTIVE
        await self._save(definition, user_id)
        logger.info(f"Workflow activated: {definition_id}")
        return definition

    async def deactivate(self, definition_id: str, user_id: Optional[str] = None) -> WorkflowDefinition:
        definition = await self.get(definition_id)
        if definition.status != DefinitionStatus.ACTIVE:
            raise InvalidTransition("Workflow is not active")
        running = await self._repository.list_instances(
            definition_id=definition.id, states=ACTIVE_INSTANCE_STATES
        )
        if running:
            raise InvalidTransition(
                f"Cannot deactivate workflow with {len(running)} running instances"
            )
        definition.status = DefinitionStatus.INACTIVE
        await self._save(definition, user_id)
        logger.info(f"Workflow deactivated: {definition_id}")
        return definition

    async def archive(self, definition_id: str, user_id: Optional[str] = None) -> WorkflowDefinition:
        definition = await self.get(definition_id)
        if definition.status == DefinitionStatus.ARCHIVED:
            raise InvalidTransition("Workflow is already archived")
        definition.status = DefinitionStatus.ARCHIVED
        await self._save(definition, user_id)
        logger.info(f"Workflow archived: {definition_id}")
        return definition

    async def delete(self, definition_id: str, user_id: Optional[str] = None) -> None:
        """Soft-delete a definition that has never been run."""
        definition = await self.get(definition_id)
        if definition.status == DefinitionStatus.ACTIVE:
            raise InvalidTransition("Cannot delete active workflow")
        instances = await self._repository.list_instances(definition_id=definition.id)
        if instances:
            raise InvalidTransition(
                f"Cannot delete workflow with {len(instances)} instances. Archive it instead."
            )
        definition.deleted_at = self._clock()
        await self._save(definition, user_id)
        logger.info(f"Workflow deleted: {definition_id}")

    async def clone(self, definition_id: str, user_id: Optional[str] = None) -> WorkflowDefinition:
        source = await self.get(definition_id)
        stamp = int(self._clock().timestamp() * 1000)
        copy = source.model_dump(
            exclude={"id", "created_at", "updated_at", "deleted_at", "created_by", "modified_by"}
        )
        copy.update(
            code=f"{source.code}_copy_{stamp}",
            name=f"{source.name} (Copy)",
            status=DefinitionStatus.DRAFT,
            is_template=False,
            version=1,
        )
        return await self.create(copy, user_id)

    async def statistics(self) -> Dict[str, Any]:
        definitions = await self.list()
        week_ago = self._clock() - timedelta(days=7)
        instances = await self._repository.list_instances()
        return {
            "total": len(definitions),
            "active": sum(1 for d in definitions if d.is_active),
            "templates": sum(1 for d in definitions if d.is_template),
            "by_category": dict(Counter(d.category for d in definitions)),
            "by_status": dict(Counter(d.status.value for d in definitions)),
            "recent_instances": sum(1 for i in instances if i.created_at >= week_ago),
        }
