"""Task executor registry: maps a task name to an invocable capability."""

from __future__ import annotations

import abc
import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..contracts import ArtifactOutput, ExecutionMetadata, TaskRequest, TaskResult
from ..errors import ExecutorFailure

logger = logging.getLogger(__name__)

ExecutorReturn = Union[TaskResult, List[ArtifactOutput], List[dict]]
ExecutorCallable = Callable[[TaskRequest], Union[ExecutorReturn, Awaitable[ExecutorReturn]]]


class TaskExecutor(metaclass=abc.ABCMeta):
    """Capability invoked for a pipeline step.

    Implementations wrap whatever actually does the work (an agent call, a
    build, a generator). They signal failures by raising ``ExecutorFailure``;
    ``retryable=True`` marks a transient error.
    """

    name: str = ""
    version: str = "0.0.0"

    @abc.abstractmethod
    async def run(self, request: TaskRequest) -> ExecutorReturn:
        """Produce output artifacts for ``request``."""
        raise NotImplementedError


class CallableExecutor(TaskExecutor):
    """Adapter turning a plain (sync or async) function into a ``TaskExecutor``."""

    def __init__(self, name: str, fn: ExecutorCallable, version: str = "0.0.0") -> None:
        self.name = name
        self.version = version
        self._fn = fn

    async def run(self, request: TaskRequest) -> ExecutorReturn:
        result = self._fn(request)
        if inspect.isawaitable(result):
            result = await result
        return result


class TaskExecutorRegistry:
    """Name to capability lookup supplied at startup.

    The registry holds no retry or scoring logic; it dispatches one request,
    applies the request deadline and normalises failures into
    ``ExecutorFailure``.
    """

    def __init__(self) -> None:
        self._executors: Dict[str, TaskExecutor] = {}

    def register(
        self,
        name: str,
        executor: TaskExecutor | ExecutorCallable,
        version: Optional[str] = None,
    ) -> TaskExecutor:
        """Register ``executor`` under ``name``.

        Plain callables are wrapped in a ``CallableExecutor``.
        """
        if name in self._executors:
            raise ValueError(f"Task executor '{name}' is already registered")
        if not isinstance(executor, TaskExecutor):
            if not callable(executor):
                raise TypeError(f"Executor for '{name}' must be a TaskExecutor or callable")
            executor = CallableExecutor(name, executor, version or "0.0.0")
        elif version is not None:
            executor.version = version
        self._executors[name] = executor
        logger.debug(f"Registered task executor {name}")
        return executor

    def task(self, name: str, version: Optional[str] = None) -> Callable[[ExecutorCallable], ExecutorCallable]:
        """Decorator form of ``register``."""

        def decorator(fn: ExecutorCallable) -> ExecutorCallable:
            self.register(name, fn, version=version)
            return fn

        return decorator

    def get(self, name: str) -> TaskExecutor:
        if name not in self._executors:
            available = ", ".join(sorted(self._executors)) or "(none)"
            raise KeyError(f"Task executor '{name}' not found. Available executors: {available}")
        return self._executors[name]

    def names(self) -> List[str]:
        return sorted(self._executors)

    def __contains__(self, name: object) -> bool:
        return name in self._executors

    async def invoke(self, request: TaskRequest) -> TaskResult:
        """Invoke the capability registered for ``request.task_name``.

        Raises:
            ExecutorFailure: If the task is unknown, the capability fails, or
                the request deadline is exceeded (retryable).
        """
        try:
            executor = self.get(request.task_name)
        except KeyError as e:
            raise ExecutorFailure(str(e.args[0]), retryable=False) from e

        logger.debug(
            f"Invoking {request.task_name} for step {request.step_id} "
            f"(iteration {request.iteration}) run_id={request.run_id}"
        )
        started = time.monotonic()
        call = self._run(executor, request)
        if request.deadline_seconds is None:
            raw = await call
        else:
            try:
                raw = await asyncio.wait_for(call, timeout=request.deadline_seconds)
            except asyncio.TimeoutError as e:
                raise ExecutorFailure(
                    f"Task '{request.task_name}' exceeded its deadline of "
                    f"{request.deadline_seconds:g}s",
                    retryable=True,
                ) from e
        duration_ms = (time.monotonic() - started) * 1000
        return self._normalise(raw, executor, duration_ms)

    @staticmethod
    async def _run(executor: TaskExecutor, request: TaskRequest) -> Any:
        # A TimeoutError raised by the executor itself is an ordinary failure,
        # not the request deadline.
        try:
            return await executor.run(request)
        except ExecutorFailure:
            raise
        except Exception as e:
            raise ExecutorFailure(
                f"Task '{request.task_name}' raised {type(e).__name__}: {e}",
                retryable=False,
            ) from e

    @staticmethod
    def _normalise(raw: Any, executor: TaskExecutor, duration_ms: float) -> TaskResult:
        if isinstance(raw, TaskResult):
            return raw
        if raw is None:
            raw = []
        try:
            outputs = [ArtifactOutput.model_validate(o) for o in raw]
        except Exception as e:
            raise ExecutorFailure(
                f"Task '{executor.name}' returned malformed outputs: {e}",
                retryable=False,
            ) from e
        return TaskResult(
            outputs=outputs,
            metadata=ExecutionMetadata(
                duration_ms=duration_ms, executor_version=executor.version
            ),
        )
