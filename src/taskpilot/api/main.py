"""FastAPI app entrypoint for taskpilot."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from taskpilot.config.settings import Settings, get_settings
from taskpilot.llm import build_generator_from_settings
from taskpilot.models import DecompositionResult, ToolDefinition
from taskpilot.planning.workflow import RequestDecomposer
from taskpilot.storage.base import TaskStorage
from taskpilot.storage.memory import InMemoryTaskStorage
from taskpilot.storage.postgres import PostgresTaskStorage
from taskpilot.tasks.executor import TaskExecutor
from taskpilot.tasks.models import Task
from taskpilot.tasks.service import TaskActionResult, TaskService
from taskpilot.tasks.skills import load_skills
from taskpilot.tasks.updates import ExecutionContext, TaskUpdate, TaskUpdateQueue
from taskpilot.tools.catalog import ToolGateway, build_tool_catalog

_ERROR_STATUS = {"not_found": 404, "invalid": 422, "conflict": 409, "storage": 500}


class CreateTaskRequest(BaseModel):
    request: str = Field(min_length=1)
    poll_frequency: str | dict[str, Any] | None = None
    auto_send: bool = False
    messaging_channel: str | None = None


class CreateTaskResponse(BaseModel):
    task: Task
    decomposition: DecompositionResult | None = None


class ApproveMessageRequest(BaseModel):
    edited_message: str | None = None


class ReplyRequest(BaseModel):
    text: str = Field(min_length=1)


class PollRequest(BaseModel):
    trigger: Literal["schedule", "login"] = "schedule"


class MarkdownDocument(BaseModel):
    markdown: str = Field(min_length=1)


class TickResponse(BaseModel):
    task: Task
    events: list[str] = Field(default_factory=list)
    skipped_reason: str | None = None
    error: str | None = None


def _build_storage(settings: Settings) -> TaskStorage:
    if settings.storage_backend == "memory":
        return InMemoryTaskStorage()
    database_url = settings.resolved_database_url()
    if not database_url:
        raise RuntimeError(
            "Missing database URL. Set TASKPILOT_DATABASE_URL or DATABASE_URL "
            "when TASKPILOT_STORAGE_BACKEND=postgres."
        )
    return PostgresTaskStorage(database_url)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: TaskStorage | None,
    context_override: ExecutionContext | None,
    decomposer_override: RequestDecomposer | None,
) -> None:
    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "storage"):
        app.state.storage = storage_override or _build_storage(settings)
        app.state.storage.migrate()

    if not hasattr(app.state, "context"):
        app.state.context = context_override or ExecutionContext(
            updates=TaskUpdateQueue(settings.update_queue_size),
            gateway=ToolGateway(
                tool_timeout_s=settings.tool_timeout_s,
                max_retries=settings.tool_max_retries,
                backoff_s=settings.tool_retry_backoff_s,
            ),
            generator=build_generator_from_settings(settings),
        )

    if not hasattr(app.state, "decomposer"):
        app.state.decomposer = decomposer_override or RequestDecomposer(
            app.state.context.generator,
            max_refinement_attempts=settings.max_refinement_attempts,
        )

    if not hasattr(app.state, "service"):
        app.state.service = TaskService(
            app.state.storage,
            TaskExecutor.from_settings(settings, app.state.context),
            skills=load_skills(settings.skills_dir) if settings.skills_dir else (),
            default_poll_frequency=settings.default_poll_frequency,
        )


def _raise_for(result: TaskActionResult) -> Task:
    if not result.success or result.task is None:
        status_code = _ERROR_STATUS.get(result.error_code or "storage", 500)
        raise HTTPException(status_code=status_code, detail=result.error or "Task action failed")
    return result.task


def create_app(
    *,
    storage: TaskStorage | None = None,
    settings_override: Settings | None = None,
    context: ExecutionContext | None = None,
    decomposer: RequestDecomposer | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    def _ensure(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            context_override=context,
            decomposer_override=decomposer,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure(app)
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure(app)

    def _service(request: Request) -> TaskService:
        if not hasattr(request.app.state, "service"):
            _ensure(request.app)
        return request.app.state.service

    def _catalog(request: Request) -> list[ToolDefinition]:
        gateway = request.app.state.context.gateway
        return build_tool_catalog(gateway.definitions() if gateway is not None else ())

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/tools", response_model=list[ToolDefinition])
    def tools(request: Request) -> list[ToolDefinition]:
        _service(request)
        return _catalog(request)

    @app.post("/tasks", response_model=CreateTaskResponse)
    def create_task(payload: CreateTaskRequest, request: Request) -> CreateTaskResponse:
        service = _service(request)
        result = service.create_from_request(
            payload.request,
            request.app.state.decomposer,
            _catalog(request),
            poll_frequency=payload.poll_frequency,
            auto_send=payload.auto_send,
            messaging_channel=payload.messaging_channel,
        )
        return CreateTaskResponse(task=_raise_for(result), decomposition=result.decomposition)

    @app.get("/tasks", response_model=list[Task])
    def list_tasks(request: Request, include_hidden: bool = False) -> list[Task]:
        return _service(request).list_tasks(include_hidden=include_hidden)

    @app.post("/tasks/poll", response_model=list[TickResponse])
    def poll_tasks(payload: PollRequest, request: Request) -> list[TickResponse]:
        results = _service(request).poll_due(trigger=payload.trigger)
        return [
            TickResponse(
                task=result.task,
                events=result.events,
                skipped_reason=result.skipped_reason,
                error=result.error,
            )
            for result in results
            if result.task is not None
        ]

    @app.get("/tasks/{task_id}", response_model=Task)
    def get_task(task_id: str, request: Request) -> Task:
        return _raise_for(_service(request).get_task(task_id))

    @app.get("/tasks/{task_id}/markdown", response_model=MarkdownDocument)
    def export_markdown(task_id: str, request: Request) -> MarkdownDocument:
        result = _service(request).export_markdown(task_id)
        _raise_for(result)
        return MarkdownDocument(markdown=result.markdown or "")

    @app.put("/tasks/{task_id}/markdown", response_model=Task)
    def import_markdown(task_id: str, payload: MarkdownDocument, request: Request) -> Task:
        return _raise_for(_service(request).import_markdown(payload.markdown, task_id=task_id))

    @app.post("/tasks/{task_id}/tick", response_model=TickResponse)
    def tick_task(task_id: str, request: Request) -> TickResponse:
        result = _service(request).tick_task(task_id, trigger="manual")
        return TickResponse(
            task=_raise_for(result),
            events=result.events,
            skipped_reason=result.skipped_reason,
            error=result.error,
        )

    @app.post("/tasks/{task_id}/messages/{message_id}/approve", response_model=Task)
    def approve_message(
        task_id: str,
        message_id: str,
        request: Request,
        payload: ApproveMessageRequest | None = None,
    ) -> Task:
        edited = payload.edited_message if payload is not None else None
        result = _service(request).approve_message(task_id, message_id, edited_message=edited)
        return _raise_for(result)

    @app.post("/tasks/{task_id}/messages/{message_id}/reject", response_model=Task)
    def reject_message(task_id: str, message_id: str, request: Request) -> Task:
        return _raise_for(_service(request).reject_message(task_id, message_id))

    @app.post("/tasks/{task_id}/reply", response_model=Task)
    def reply(task_id: str, payload: ReplyRequest, request: Request) -> Task:
        return _raise_for(_service(request).provide_input(task_id, payload.text))

    @app.post("/tasks/{task_id}/cancel", response_model=Task)
    def cancel_task(task_id: str, request: Request) -> Task:
        return _raise_for(_service(request).cancel(task_id))

    @app.post("/tasks/{task_id}/hide", response_model=Task)
    def hide_task(task_id: str, request: Request) -> Task:
        return _raise_for(_service(request).hide(task_id))

    @app.get("/updates", response_model=list[TaskUpdate])
    def updates(request: Request) -> list[TaskUpdate]:
        _service(request)
        sink = request.app.state.context.updates
        return sink.drain() if isinstance(sink, TaskUpdateQueue) else []

    return app


app = create_app()
