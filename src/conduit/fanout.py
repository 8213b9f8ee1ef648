"""Fanout: one request, many targets, one merged event stream.

Each target runs its own tool loop as an asyncio task. Events are tagged with
the target's label and interleaved in arrival order; per target they keep
their own order. A failing target contributes an ``ErrorEvent`` and a
``Finish(error)`` and never disturbs its siblings.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING

from conduit.errors import ConduitError, ValidationError, event_from_error
from conduit.events import ErrorEvent, ErrorKind, Finish, FinishReason, StreamEvent
from conduit.orchestrator import ToolLoop

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from conduit.config import InvokeConfig
    from conduit.registry import ProviderRegistry
    from conduit.tools import ToolExecutor
    from conduit.types import GenerationRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    """Where to send a request: provider, model and an optional label."""

    provider: str
    model: str
    id: str | None = None
    api_key: str | None = field(default=None, repr=False)

    @property
    def label(self) -> str:
        return self.id or f"{self.provider}/{self.model}"

    @classmethod
    def parse(cls, spec: str | Target) -> Target:
        """Accept a ``Target`` or a ``provider/model`` string.

        Only the first ``/`` separates the provider, so model names may
        themselves contain slashes (``openrouter/meta-llama/llama-3``).
        """
        if isinstance(spec, Target):
            return spec
        provider, sep, model = spec.partition("/")
        if not sep or not provider or not model:
            raise ValidationError(
                f"Target {spec!r} is not of the form 'provider/model'",
                hint="For example 'openai/gpt-4o-mini'.",
            )
        return cls(provider, model)


_DONE = object()


class FanoutRouter:
    """Runs the same request against several targets concurrently.

    ``outcomes`` maps each label to ``None`` on success or the exception
    that ended that target, once :meth:`run` has finished.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        executor: ToolExecutor | None = None,
        config: InvokeConfig | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._config = config
        self.outcomes: dict[str, BaseException | None] = {}

    async def run(
        self,
        request: GenerationRequest,
        targets: Iterable[str | Target],
    ) -> AsyncIterator[tuple[str, StreamEvent]]:
        resolved_targets = [Target.parse(t) for t in targets]
        labels = [t.label for t in resolved_targets]
        duplicates = sorted({x for x in labels if labels.count(x) > 1})
        if duplicates:
            raise ValidationError(
                f"Duplicate fanout target(s): {', '.join(duplicates)}",
                hint="Give repeated provider/model pairs distinct Target ids.",
            )

        queue: asyncio.Queue[tuple[str, object]] = asyncio.Queue()
        tasks = [
            asyncio.create_task(self._drive(request, target, queue))
            for target in resolved_targets
        ]
        try:
            pending = len(tasks)
            while pending:
                label, item = await queue.get()
                if item is _DONE:
                    pending -= 1
                    continue
                yield label, item  # type: ignore[misc]
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _drive(
        self,
        request: GenerationRequest,
        target: Target,
        queue: asyncio.Queue[tuple[str, object]],
    ) -> None:
        label = target.label
        try:
            resolved = await self._registry.resolve(
                target.provider, target.model, target.api_key
            )
            loop = ToolLoop(
                resolved, request, executor=self._executor, config=self._config
            )
            async for event in loop.run():
                await queue.put((label, event))
            self.outcomes[label] = None
        except asyncio.CancelledError:
            raise
        except ConduitError as e:
            self.outcomes[label] = e
            await self._put_failure(queue, label, event_from_error(e))
        except Exception as e:
            logger.warning("Fanout target %s failed unexpectedly: %r", label, e)
            self.outcomes[label] = e
            await self._put_failure(
                queue, label, ErrorEvent(ErrorKind.PROVIDER, f"{type(e).__name__}: {e}")
            )
        finally:
            await queue.put((label, _DONE))

    @staticmethod
    async def _put_failure(
        queue: asyncio.Queue[tuple[str, object]], label: str, error: ErrorEvent
    ) -> None:
        await queue.put((label, error))
        await queue.put((label, Finish(FinishReason.ERROR)))
