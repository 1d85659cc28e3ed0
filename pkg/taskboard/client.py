"""
UI-facing board client.

Wires a ReconciliationEngine to a persistence gateway and a live channel
transport for one project:

    intent → optimistic local update → gateway call → confirm or roll back

All engine work happens on the asyncio loop that opened the client. The
gateway is blocking, so each call runs in a worker thread under the
session's request timeout. Live updates arrive on whatever thread the
transport uses and are handed to the loop with call_soon_threadsafe.
"""
import asyncio
import logging
from typing import Any, Callable, List, Optional, Union

from .errors import ConfigError, NetworkFailure, NotFound, ValidationFailed
from .gateway import Gateway
from .protocol import status_change_intent
from .reconciler import BoardView, ReconciliationEngine
from .schema import LOCAL_ID_PREFIX, EventKind, LiveUpdateEvent, Member, MoveIntent, TaskDraft, TaskStatus
from .session import Session
from .transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class BoardClient:
    """One project's board, as one logged-in user sees it."""

    def __init__(
        self,
        gateway: Gateway,
        transport: Transport,
        project_id: str,
        session: Optional[Session] = None,
    ):
        self.gateway = gateway
        self.transport = transport
        self.project_id = project_id
        self.session = session
        self.engine = ReconciliationEngine(project_id)
        self._members: List[Member] = []
        self._tokens: List[str] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loading = False
        self._buffered: List[LiveUpdateEvent] = []
        self._opened = False
        self._closed = False

    @property
    def request_timeout(self) -> float:
        return self.session.request_timeout if self.session else DEFAULT_TIMEOUT

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def open(self) -> BoardView:
        """Subscribe to the live channel, then load tasks and members."""
        if self._closed:
            raise ConfigError("Board client is closed")
        if self._opened:
            return self.view
        self._loop = asyncio.get_running_loop()
        for kind in EventKind:
            self._tokens.append(self.transport.subscribe(kind, self._on_event))
        self.transport.start()
        self._opened = True
        logger.info(f"Opened board for project {self.project_id}")
        return await self.reload()

    async def reload(self) -> BoardView:
        """
        Re-fetch the full board. Live updates that arrive while the listing
        is in flight are held and merged on top of it.
        """
        self._require_open()
        self._loading = True
        try:
            tasks = await self._call(self.gateway.list_tasks, self.project_id)
            members = await self._call(self.gateway.list_members, self.project_id)
        except Exception:
            self._loading = False
            self._buffered = []
            raise
        if self._closed:
            return self.view
        self._members = members
        self.engine.load(tasks)
        self._loading = False
        buffered, self._buffered = self._buffered, []
        for event in buffered:
            self.engine.apply_remote_event(event)
        return self.view

    async def close(self) -> None:
        """Stop listening. Requests still in flight are abandoned."""
        if self._closed:
            return
        self._closed = True
        for token in self._tokens:
            self.transport.unsubscribe(token)
        self._tokens = []
        self.transport.close()
        logger.info(f"Closed board for project {self.project_id}")

    async def __aenter__(self) -> "BoardClient":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def view(self) -> BoardView:
        return self.engine.view

    @property
    def members(self) -> List[Member]:
        return list(self._members)

    def on_board_changed(self, callback: Callable[[BoardView], None]) -> str:
        return self.engine.on_board_changed(callback)

    def remove_listener(self, token: str) -> bool:
        return self.engine.remove_listener(token)

    # ── Live updates ─────────────────────────────────────────────────────────

    def _on_event(self, event: LiveUpdateEvent) -> None:
        loop = self._loop
        if self._closed or loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._deliver, event)
        except RuntimeError:
            # Loop shut down between the check and the call
            logger.debug(f"Dropped {event.kind.wire_name} after loop shutdown")

    def _deliver(self, event: LiveUpdateEvent) -> None:
        if self._closed:
            return
        if self._loading:
            self._buffered.append(event)
            return
        self.engine.apply_remote_event(event)

    # ── Gateway calls ────────────────────────────────────────────────────────

    def _require_open(self) -> None:
        if self._closed:
            raise ConfigError("Board client is closed")
        if not self._opened:
            raise ConfigError("Board client is not open")

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkFailure(
                f"{getattr(fn, '__name__', 'request')} timed out after {self.request_timeout}s"
            ) from e

    def _check_settled(self, task_id: str) -> None:
        if task_id.startswith(LOCAL_ID_PREFIX):
            raise ValidationFailed("Task is still being created")

    # ── Intents ──────────────────────────────────────────────────────────────

    async def submit_move_intent(self, intent: MoveIntent) -> BoardView:
        """
        Apply a drag-drop move now and confirm it with the server.

        Same-column reorders never leave the client. A failed transition is
        rolled back before the error is re-raised; NotFound also drops the
        task from the board.
        """
        self._require_open()
        self._check_settled(intent.task_id)
        mutation = self.engine.apply_local_move(intent)
        if mutation is None or not mutation.requires_confirmation:
            return self.view

        plan = mutation.plan
        try:
            task = await self._call(self.gateway.update_task, plan.task_id, **plan.request_fields())
        except Exception as e:
            if not self._closed:
                self.engine.confirm_move(plan.task_id, False, mutation=mutation)
                if isinstance(e, NotFound):
                    self.engine.discard_task(plan.task_id)
            logger.warning(f"Move of {plan.task_id} to {plan.destination.value} failed: {e}")
            raise
        if not self._closed:
            self.engine.confirm_move(plan.task_id, True, task, mutation=mutation)
        return self.view

    async def submit_status_change(self, task_id: str,
                                   new_status: Union[TaskStatus, str]) -> BoardView:
        """Status-selector change; same path as a drop at the end of the column."""
        return await self.submit_move_intent(status_change_intent(task_id, new_status))

    async def submit_create(self, draft: TaskDraft) -> BoardView:
        self._require_open()
        mutation = self.engine.apply_local_create(draft)
        placeholder = mutation.task
        try:
            task = await self._call(
                self.gateway.create_task,
                self.project_id,
                placeholder.title,
                description=placeholder.description,
                status=placeholder.status.value,
                assignee_id=placeholder.assignee_id,
            )
        except Exception as e:
            if not self._closed:
                self.engine.confirm_create(placeholder.id, False)
            logger.warning(f"Create of {placeholder.title!r} failed: {e}")
            raise
        if not self._closed:
            self.engine.confirm_create(placeholder.id, True, task)
        return self.view

    async def submit_delete(self, task_id: str) -> BoardView:
        self._require_open()
        self._check_settled(task_id)
        if self.engine.apply_local_delete(task_id) is None:
            return self.view
        try:
            await self._call(self.gateway.delete_task, task_id)
        except Exception as e:
            if not self._closed:
                self.engine.confirm_delete(task_id, False)
                if isinstance(e, NotFound):
                    self.engine.discard_task(task_id)
            logger.warning(f"Delete of {task_id} failed: {e}")
            raise
        if not self._closed:
            self.engine.confirm_delete(task_id, True)
        return self.view
