"""
Command surface.

Translates request/response messages (``{"action": ..., ...}``) into
orchestrator calls. Every response carries ``success``; failures never
raise out of :meth:`CommandDispatcher.dispatch`.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Awaitable, Callable, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from docharvest.core.backends.base import RenderError
from docharvest.core.config.models import JobKind
from docharvest.core.export import sanitize_filename
from docharvest.persistence.store import StateStore

from .service import Orchestrator

logger = logging.getLogger(__name__)

PRINT_DATA_KEY = "print_data"


# =============================================================================
# Request models
# =============================================================================


class CommandModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    action: str


class EnqueueItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    target: str = Field(validation_alias=AliasChoices("target", "url"), min_length=1)
    label: str | None = Field(default=None, validation_alias=AliasChoices("label", "title"))
    kind: JobKind | None = None


class EnqueueCommand(CommandModel):
    items: list[EnqueueItem] = Field(min_length=1)
    format: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)


class SetConcurrencyCommand(CommandModel):
    value: Any = None


class TargetsCommand(CommandModel):
    targets: list[str] = Field(default_factory=list)


class TargetCommand(CommandModel):
    target: str = Field(validation_alias=AliasChoices("target", "url"), min_length=1)


class ProgressCommand(CommandModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    target: str | None = Field(default=None, validation_alias=AliasChoices("target", "url"))
    request_id: str | None = None


class RenderCommand(CommandModel):
    title: str = "document"
    markup: str | None = None
    images: list[dict[str, Any]] = Field(default_factory=list)


class NoArgsCommand(CommandModel):
    pass


def _validation_message(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "request"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


# =============================================================================
# Dispatcher
# =============================================================================


class CommandDispatcher:
    """Routes command messages to an :class:`Orchestrator`.

    Args:
        orchestrator: Target orchestrator
        store: Store holding ad-hoc render payloads (``print_data``);
            defaults to the orchestrator's store
    """

    def __init__(self, orchestrator: Orchestrator, store: StateStore | None = None):
        self.orchestrator = orchestrator
        self.store = store or orchestrator.store
        self._handlers: dict[str, tuple[type[CommandModel], Callable[[Any], Awaitable[dict[str, Any]]]]] = {
            "enqueue": (EnqueueCommand, self._enqueue),
            "set-concurrency": (SetConcurrencyCommand, self._set_concurrency),
            "get-status": (NoArgsCommand, self._get_status),
            "get-full-results": (TargetsCommand, self._get_full_results),
            "pause": (NoArgsCommand, self._pause),
            "resume": (NoArgsCommand, self._resume),
            "clear-all": (NoArgsCommand, self._clear_all),
            "delete-one": (TargetCommand, self._delete_one),
            "retry-one": (TargetCommand, self._retry_one),
            "retry-all-failed": (NoArgsCommand, self._retry_all_failed),
            "report-progress": (ProgressCommand, self._report_progress),
            "render-request": (RenderCommand, self._render),
        }

    @property
    def actions(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, request: Mapping[str, Any]) -> dict[str, Any]:
        """Handle one command message and return its response."""
        action = request.get("action") if isinstance(request, Mapping) else None
        if action not in self._handlers:
            return {"success": False, "error": f"Unknown action: {action}"}

        model, handler = self._handlers[action]
        try:
            command = model.model_validate(dict(request))
        except ValidationError as e:
            return {"success": False, "error": f"Invalid {action} request: {_validation_message(e)}"}

        try:
            return await handler(command)
        except Exception as e:
            logger.exception(f"Command {action} failed")
            return {"success": False, "error": str(e) or type(e).__name__}

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _enqueue(self, command: EnqueueCommand) -> dict[str, Any]:
        items = [item.model_dump(exclude_none=True) for item in command.items]
        added = await self.orchestrator.enqueue(items, command.format, command.options)
        return {"success": True, "added": len(added), "message": "Started"}

    async def _set_concurrency(self, command: SetConcurrencyCommand) -> dict[str, Any]:
        ceilings = await self.orchestrator.set_concurrency_ceiling(command.value)
        return {"success": True, **ceilings}

    async def _get_status(self, command: NoArgsCommand) -> dict[str, Any]:
        return {"success": True, **self.orchestrator.get_status()}

    async def _get_full_results(self, command: TargetsCommand) -> dict[str, Any]:
        return {"success": True, "data": self.orchestrator.get_full_results(command.targets)}

    async def _pause(self, command: NoArgsCommand) -> dict[str, Any]:
        await self.orchestrator.pause()
        return {"success": True}

    async def _resume(self, command: NoArgsCommand) -> dict[str, Any]:
        await self.orchestrator.resume()
        return {"success": True}

    async def _clear_all(self, command: NoArgsCommand) -> dict[str, Any]:
        await self.orchestrator.clear_all()
        return {"success": True}

    async def _delete_one(self, command: TargetCommand) -> dict[str, Any]:
        await self.orchestrator.delete_one(command.target)
        return {"success": True}

    async def _retry_one(self, command: TargetCommand) -> dict[str, Any]:
        if not await self.orchestrator.retry(command.target):
            return {"success": False, "error": "Item not found or not failed"}
        return {"success": True}

    async def _retry_all_failed(self, command: NoArgsCommand) -> dict[str, Any]:
        count = await self.orchestrator.retry_all_failed()
        return {"success": True, "count": count}

    async def _report_progress(self, command: ProgressCommand) -> dict[str, Any]:
        update = dict(command.model_extra or {})
        # Progress is advisory; unknown jobs are not an error
        await self.orchestrator.report_progress(
            update,
            target=command.target,
            request_id=command.request_id,
        )
        return {"success": True}

    async def _render(self, command: RenderCommand) -> dict[str, Any]:
        markup = command.markup
        images = command.images
        title = command.title
        from_store = markup is None

        if from_store:
            stored = (await self.store.get([PRINT_DATA_KEY])).get(PRINT_DATA_KEY)
            if not isinstance(stored, Mapping) or not stored.get("content"):
                return {"success": False, "error": "No print data"}
            markup = stored["content"]
            images = list(stored.get("images") or [])
            title = stored.get("title") or title

        result = await self.orchestrator.render_document(markup, title, images)
        if not result.ok:
            raise RenderError(result.error or "PDF generation failed")

        if from_store:
            await self.store.remove([PRINT_DATA_KEY])

        return {
            "success": True,
            "data": base64.b64encode(result.document).decode("ascii"),
            "filename": f"{sanitize_filename(title)}.pdf",
        }
