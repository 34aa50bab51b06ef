"""
Job handlers.

A handler is either a callable supplied when the job is defined (Direct) or a
dotted identifier that is imported when the job actually runs (Deferred). An
identifier may name a class exposing a static/class ``handle(args)``, a class
whose instances expose ``handle(args)``, an object with a ``handle`` method, or
a plain callable.

Identifiers look like ``package.module:ClassName`` or ``package.module.ClassName``.
"""
import asyncio
import importlib
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Union

from cronqueue.domain.errors import DefinitionError


@dataclass(frozen=True)
class Direct:
    func: Callable[..., Any]


@dataclass(frozen=True)
class Deferred:
    identifier: str


Handler = Union[Direct, Deferred]


def resolve_identifier(identifier: str) -> Any:
    """Imports the object an identifier points at, or raises DefinitionError."""
    identifier = identifier.strip()
    if ":" in identifier:
        module_name, _, attr_path = identifier.partition(":")
    else:
        module_name, _, attr_path = identifier.rpartition(".")

    if not module_name or not attr_path:
        raise DefinitionError(f"Unknown handler '{identifier}'. Provide a callable or a 'module:attr' identifier.")

    try:
        target = importlib.import_module(module_name)
    except ImportError as e:
        raise DefinitionError(f"Cannot import '{module_name}' for handler '{identifier}': {e}") from e

    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as e:
            raise DefinitionError(f"'{identifier}' does not exist") from e

    return target


def is_resolvable(identifier: str) -> bool:
    try:
        resolve_identifier(identifier)
    except DefinitionError:
        return False
    return True


def bind(handler: Handler) -> Callable[[dict], Any]:
    """
    Turns a handler into a callable taking the args dict.

    Lookup order for a Deferred target: static or class ``handle``, then an
    instance's ``handle``, then the target itself when it is callable.
    """
    if isinstance(handler, Direct):
        return handler.func

    target = resolve_identifier(handler.identifier)

    if inspect.isclass(target):
        declared = inspect.getattr_static(target, "handle", None)
        if isinstance(declared, (staticmethod, classmethod)):
            return target.handle
        if declared is not None and callable(getattr(target, "handle", None)):
            return target().handle
        raise DefinitionError(f"Class {handler.identifier} must define handle()")

    handle = getattr(target, "handle", None)
    if callable(handle):
        return handle
    if callable(target):
        return target

    raise DefinitionError(f"No handler for job '{handler.identifier}'")


async def call(fn: Callable[..., Any], *args: Any) -> Any:
    """
    Calls a sync or async callable and returns its (awaited) result. Plain
    callables run in a worker thread so they cannot stall the event loop.
    """
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        result = await result
    return result
