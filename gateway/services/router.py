"""BackendRouter — pick a generation backend and fail over to the next one.

The router owns a closed registry of adapters (name → adapter) and an ordered
priority list. A request names its preferred backend; on failure the router
walks the remaining registered backends in priority order, up to
``max_fallbacks`` extra attempts. Every adapter call is bounded by a timeout
and a timeout counts as a backend failure. Each backend has its own worker
pool, so a hung provider cannot starve the fallback. A timed-out call that
never started is dropped; one already running finishes in the background and
its result is discarded.
"""

from __future__ import annotations

import contextvars
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass

from logging_config import backend_var
from services.backends import GenerationBackend, GenerationResult
from services.errors import AllBackendsUnavailable, BackendUnavailable, UnsupportedBackend

logger = logging.getLogger(__name__)


@dataclass
class GenerationOutcome:
    text: str
    token_count: int
    latency_ms: int
    backend_used: str
    used_fallback: bool
    input_tokens: int = 0
    output_tokens: int = 0
    model_name: str = ""


class BackendRouter:

    def __init__(
        self,
        backends: dict[str, GenerationBackend],
        priority: list[str] | None = None,
        *,
        max_fallbacks: int = 1,
        timeout_seconds: float | None = 60.0,
        max_workers: int = 16,
    ) -> None:
        self._backends = dict(backends)
        ordered = [name for name in (priority or []) if name in self._backends]
        ordered += [name for name in self._backends if name not in ordered]
        self.priority = ordered
        self.max_fallbacks = max(0, max_fallbacks)
        self.timeout_seconds = timeout_seconds
        # one pool per backend: a hung provider can only exhaust its own workers
        self._executors = {
            name: ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"generation-{name}")
            for name in self._backends
        }

    @property
    def names(self) -> list[str]:
        return list(self.priority)

    def resolve(self, name: str) -> GenerationBackend:
        backend = self._backends.get(name)
        if backend is None:
            raise UnsupportedBackend(name)
        return backend

    def candidates(self, preferred: str) -> list[str]:
        """Preferred backend first, then the next ones in priority order."""
        self.resolve(preferred)
        rest = [name for name in self.priority if name != preferred]
        return [preferred] + rest[: self.max_fallbacks]

    def route(
        self,
        messages: list[dict],
        preferred: str,
        options: dict | None = None,
    ) -> GenerationOutcome:
        options = dict(options or {})
        timeout = options.pop("timeout", None) or self.timeout_seconds
        order = self.candidates(preferred)

        errors: list[BackendUnavailable] = []
        start = time.perf_counter()
        for name in order:
            if errors:
                logger.info("Attempting fallback to %s", name)
            try:
                result = self._call(self._backends[name], messages, options, timeout)
            except BackendUnavailable as exc:
                logger.error("Generation failed on %s: %s", name, exc.reason)
                errors.append(exc)
                continue

            return GenerationOutcome(
                text=result.text,
                token_count=result.token_count,
                latency_ms=int((time.perf_counter() - start) * 1000),
                backend_used=name,
                used_fallback=name != preferred,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                model_name=result.model_name,
            )

        logger.error("All backends failed: %s", "; ".join(str(e) for e in errors))
        raise AllBackendsUnavailable(errors)

    def _call(
        self,
        backend: GenerationBackend,
        messages: list[dict],
        options: dict,
        timeout: float | None,
    ) -> GenerationResult:
        logger.debug("Calling backend %s with %d message(s)", backend.name, len(messages))
        # worker threads do not inherit contextvars; carry the exchange context over
        ctx = contextvars.copy_context()
        ctx.run(backend_var.set, backend.name)
        try:
            future = self._executors[backend.name].submit(ctx.run, backend.generate, messages, options)
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            if future.cancel():
                raise BackendUnavailable(backend.name, f"no free worker within {timeout}s") from exc
            raise BackendUnavailable(backend.name, f"timed out after {timeout}s") from exc
        except BackendUnavailable:
            raise
        except Exception as exc:
            raise BackendUnavailable(backend.name, str(exc)) from exc

    def health(self) -> dict[str, bool]:
        return {name: self._backends[name].health_check() for name in self.priority}

    def shutdown(self) -> None:
        for executor in self._executors.values():
            executor.shutdown(wait=False, cancel_futures=True)
