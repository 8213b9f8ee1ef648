"""Tool execution collaborators and argument checking.

The orchestrator talks to tools only through :class:`ToolExecutor`. It makes
no idempotence assumption: each dispatched call is executed at most once,
and submission retries never re-run a tool.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
import inspect
import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

from conduit.errors import ToolExecutionFatalError, ValidationError
from conduit.types import ToolCallResult

if TYPE_CHECKING:
    from conduit.types import ToolSpec

logger = logging.getLogger(__name__)


class ToolExecutor(Protocol):
    """Runs one tool call.

    Return a :class:`ToolCallResult`; an empty ``id`` is filled in with the
    call's id. Raise :class:`ToolExecutionFatalError` to abort the loop; any
    other failure should come back as a result with ``is_error=True``.
    """

    async def execute(self, name: str, arguments: Any) -> ToolCallResult: ...


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


class FunctionTools:
    """Executor backed by plain Python callables.

    Sync functions run in a worker thread so a blocking tool never stalls the
    event loop. Exceptions become error results the model can react to,
    except :class:`ToolExecutionFatalError`, which propagates.

    Example:
        tools = FunctionTools()

        @tools.register
        def get_time() -> str:
            return "10:00"
    """

    def __init__(
        self,
        functions: Mapping[str, Callable[..., Any]] | Iterable[Callable[..., Any]] = (),
    ) -> None:
        self._functions: dict[str, Callable[..., Any]] = {}
        if isinstance(functions, Mapping):
            self._functions.update(functions)
        else:
            for fn in functions:
                self.register(fn)

    def register(
        self, fn: Callable[..., Any] | None = None, *, name: str | None = None
    ) -> Any:
        """Register *fn* under *name* (default ``__name__``); works as a decorator."""

        def add(f: Callable[..., Any]) -> Callable[..., Any]:
            self._functions[name or f.__name__] = f
            return f

        return add(fn) if fn is not None else add

    @property
    def names(self) -> list[str]:
        return sorted(self._functions)

    async def execute(self, name: str, arguments: Any) -> ToolCallResult:
        fn = self._functions.get(name)
        if fn is None:
            return ToolCallResult("", f"Unknown tool: {name}", is_error=True, name=name)
        args: tuple[Any, ...] = ()
        kwargs: dict[str, Any] = {}
        if isinstance(arguments, dict):
            kwargs = arguments
        elif arguments is not None:
            args = (arguments,)
        try:
            if inspect.iscoroutinefunction(fn):
                value = await fn(*args, **kwargs)
            else:
                value = await asyncio.to_thread(fn, *args, **kwargs)
        except ToolExecutionFatalError:
            raise
        except Exception as e:
            logger.debug("Tool %s failed: %s", name, e)
            message = f"{type(e).__name__}: {e}"
            return ToolCallResult("", message, is_error=True, name=name)
        return ToolCallResult("", _render(value), name=name)


def parse_arguments(raw: Any, spec: ToolSpec) -> Any:
    """Decode joined argument fragments and check them against *spec*.

    Raises:
        ValidationError: the text is not JSON or does not fit the schema.
    """
    if isinstance(raw, str):
        if not raw.strip():
            value: Any = {}
        else:
            try:
                value = json.loads(raw)
            except ValueError as e:
                raise ValidationError(
                    f"Arguments for tool {spec.name!r} are not valid JSON: {e}"
                ) from e
    else:
        value = raw
    problems = check_schema(value, spec.parameters)
    if problems:
        raise ValidationError(
            f"Arguments for tool {spec.name!r} do not match its schema: "
            + "; ".join(problems)
        )
    return value


_JSON_TYPES: dict[str, Callable[[Any], bool]] = {
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "null": lambda v: v is None,
}


def check_schema(value: Any, schema: Mapping[str, Any], path: str = "$") -> list[str]:
    """Structural JSON-schema check: type, enum, required, properties, items.

    Keywords outside that subset are accepted without checking.
    """
    problems: list[str] = []
    expected = schema.get("type")
    if expected is not None:
        types = expected if isinstance(expected, list) else [expected]
        known = [t for t in types if t in _JSON_TYPES]
        if known and not any(_JSON_TYPES[t](value) for t in known):
            problems.append(f"{path}: expected {'/'.join(known)}")
            return problems
    if "enum" in schema and value not in schema["enum"]:
        problems.append(f"{path}: {value!r} is not one of {schema['enum']!r}")

    if isinstance(value, dict):
        properties = schema.get("properties") or {}
        for key in schema.get("required") or []:
            if key not in value:
                problems.append(f"{path}: missing required property {key!r}")
        for key, item in value.items():
            if key in properties:
                problems.extend(check_schema(item, properties[key], f"{path}.{key}"))
            elif schema.get("additionalProperties") is False:
                problems.append(f"{path}: unexpected property {key!r}")
    elif isinstance(value, list) and isinstance(schema.get("items"), Mapping):
        for i, item in enumerate(value):
            problems.extend(check_schema(item, schema["items"], f"{path}[{i}]"))
    return problems
