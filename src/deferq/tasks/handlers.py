"""Task-type to handler registry.

The queue core never interprets ``task_type`` beyond looking it up here. New
task types are added by registering a handler, not by editing the worker.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Iterator
from typing import Protocol

from deferq.tasks.models import Outcome, Success, TaskView

logger = logging.getLogger(__name__)

HandlerResult = Outcome | bool


class TaskHandler(Protocol):
    """Capability implemented by task handlers."""

    def run(self, task: TaskView) -> HandlerResult:
        """Execute one attempt of ``task`` and report its outcome."""


class FunctionHandler:
    """Adapts a plain callable to the handler protocol."""

    def __init__(self, func: Callable[[TaskView], HandlerResult]) -> None:
        self.func = func

    def run(self, task: TaskView) -> HandlerResult:
        return self.func(task)

    def __repr__(self) -> str:
        return f"FunctionHandler({getattr(self.func, '__qualname__', self.func)!r})"


class HandlerRegistry:
    """Mapping of task type to handler."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(
        self,
        task_type: str,
        handler: TaskHandler | Callable[[TaskView], HandlerResult],
    ) -> None:
        if not task_type:
            raise ValueError("task_type is required")
        if task_type in self._handlers:
            raise ValueError(f"Handler already registered for task type {task_type!r}")
        if not hasattr(handler, "run"):
            handler = FunctionHandler(handler)  # type: ignore[arg-type]
        self._handlers[task_type] = handler  # type: ignore[assignment]

    def handler(
        self,
        task_type: str,
    ) -> Callable[[Callable[[TaskView], HandlerResult]], Callable[[TaskView], HandlerResult]]:
        """Decorator form of ``register`` for plain functions."""

        def decorator(
            func: Callable[[TaskView], HandlerResult],
        ) -> Callable[[TaskView], HandlerResult]:
            self.register(task_type, func)
            return func

        return decorator

    def get(self, task_type: str) -> TaskHandler | None:
        return self._handlers.get(task_type)

    def task_types(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self.task_types())

    def __len__(self) -> int:
        return len(self._handlers)


def load_registry(import_path: str) -> HandlerRegistry:
    """Import a registry from ``"package.module:attribute"``.

    The attribute may be a ``HandlerRegistry`` or a zero-argument callable
    returning one.
    """

    module_name, sep, attribute = import_path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(
            f"Invalid handler registry path {import_path!r}. Expected 'package.module:attribute'.",
        )
    module = importlib.import_module(module_name)
    try:
        target = getattr(module, attribute)
    except AttributeError as error:
        raise ValueError(f"Module {module_name!r} has no attribute {attribute!r}") from error
    if callable(target) and not isinstance(target, HandlerRegistry):
        target = target()
    if not isinstance(target, HandlerRegistry):
        raise TypeError(
            f"{import_path!r} resolved to {type(target).__name__}, expected HandlerRegistry",
        )
    logger.info("Loaded handler registry %s types=%s", import_path, ",".join(target))
    return target


def builtin_registry() -> HandlerRegistry:
    """Registry with the handlers shipped in the package."""

    registry = HandlerRegistry()
    registry.register("noop", _noop)
    return registry


def _noop(task: TaskView) -> Outcome:
    logger.info("noop task id=%s attempt=%s", task.task_id, task.attempt_count)
    return Success()
