"""
Two-phase generation dispatcher with backend fallback.

Phase 1 (extract) condenses the record's facts with a cheap model; phase 2
(synthesize) writes the final text with a premium model from the digest
and the retrieved context. Each phase walks the backend preference list:
a backend without credentials, or one that fails, is logged, recorded as a
fallback and replaced by the next. If extraction runs out of backends the
facts go to synthesis unchanged; if synthesis runs out,
``ExhaustedFallbackError`` is raised.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Sequence

import structlog

from vulnintel.core.config import Settings, get_settings
from vulnintel.core.errors import AuthError, ExhaustedFallbackError, GenerationError
from vulnintel.models.records import (
    CanonicalRecord,
    GenerationRequest,
    GenerationResponse,
    RetrievalResult,
)
from vulnintel.services.llm_backends import Completion, LLMBackend, create_backends
from vulnintel.services.http_client import ResilientHttpClient
from vulnintel.services.metrics import MetricsFacade, metrics as default_metrics
from vulnintel.services.prompts import build_extract_prompt, build_synthesize_prompt
from vulnintel.utils.retry import SleepFn, build_phase_retrying

logger = structlog.get_logger(__name__)

PHASE_EXTRACT = "extract"
PHASE_SYNTHESIZE = "synthesize"


class GenerationDispatcher:
    def __init__(
        self,
        backends: Dict[str, LLMBackend],
        *,
        preference: Optional[Sequence[str]] = None,
        extract_models: Optional[Dict[str, str]] = None,
        synthesize_models: Optional[Dict[str, str]] = None,
        metrics: Optional[MetricsFacade] = None,
        sleep: Optional[SleepFn] = None,
        extract_attempts: int = 2,
        retry_delay: float = 1.0,
    ) -> None:
        self.backends = dict(backends)
        self.preference = list(preference) if preference is not None else list(self.backends)
        self.extract_models = dict(extract_models or {})
        self.synthesize_models = dict(synthesize_models or {})
        self.metrics = metrics or default_metrics
        self._sleep = sleep
        self.extract_attempts = max(1, extract_attempts)
        self.retry_delay = retry_delay

    # ────────────────────────────────────────────────────────────
    #  Helpers
    # ────────────────────────────────────────────────────────────

    def _order(self, requested: Optional[str]) -> List[str]:
        order = list(self.preference)
        if requested:
            order = [requested] + [n for n in order if n != requested]
        return order

    def _model(self, name: str, phase: str) -> str:
        overrides = self.extract_models if phase == PHASE_EXTRACT else self.synthesize_models
        if name in overrides:
            return overrides[name]
        backend = self.backends.get(name)
        return backend.model_for(phase) if backend is not None else "unknown"

    def _build_prompt(self, request: GenerationRequest) -> str:
        if request.tier == PHASE_EXTRACT:
            return build_extract_prompt(request.record)
        digest = request.digest or request.record.to_facts()
        return build_synthesize_prompt(request.record, digest, request.context, extra=request.prompt)

    def _record_substitution(
        self, name: str, model: str, phase: str, reason: str, *, last: bool
    ) -> None:
        self.metrics.record_generation(
            name,
            model,
            phase=phase,
            duration_ms=0.0,
            status="error" if last else "fallback",
            fallback=not last,
            error=reason,
        )
        if not last:
            self.metrics.increment("generation_fallbacks", phase, name)

    async def _call(self, backend: LLMBackend, model: str, prompt: str, phase: str) -> Completion:
        if phase != PHASE_EXTRACT or self.extract_attempts == 1:
            return await backend.complete(prompt, model=model)
        retrying = build_phase_retrying(
            attempts=self.extract_attempts,
            no_retry_on=(AuthError,),
            sleep=self._sleep,
            delay=self.retry_delay,
        )
        async for attempt in retrying:
            with attempt:
                return await backend.complete(prompt, model=model)
        raise GenerationError("Retry loop ended without a result", backend=backend.name, model=model)  # pragma: no cover

    # ────────────────────────────────────────────────────────────
    #  Public API
    # ────────────────────────────────────────────────────────────

    async def run_phase(self, request: GenerationRequest) -> GenerationResponse:
        """Run one phase against the first backend in preference order that succeeds."""
        phase = request.tier
        prompt = self._build_prompt(request)
        order = self._order(request.backend)
        first_choice = order[0] if order else None
        attempts: List[Dict[str, Any]] = []

        for idx, name in enumerate(order):
            last = idx == len(order) - 1
            backend = self.backends.get(name)
            model = self._model(name, phase)

            if backend is None or not backend.has_credentials:
                reason = "not configured" if backend is None else "missing credentials"
                logger.warning(
                    "Skipping generation backend",
                    backend=name,
                    phase=phase,
                    reason=reason,
                    next_backend=None if last else order[idx + 1],
                )
                attempts.append({"backend": name, "model": model, "error": reason})
                self._record_substitution(name, model, phase, reason, last=last)
                continue

            start = time.perf_counter()
            try:
                completion = await self._call(backend, model, prompt, phase)
            except GenerationError as e:
                logger.warning(
                    "Generation backend failed",
                    backend=name,
                    model=model,
                    phase=phase,
                    error=str(e),
                    error_type=type(e).__name__,
                    next_backend=None if last else order[idx + 1],
                )
                attempts.append(
                    {"backend": name, "model": model, "error": str(e), "error_type": type(e).__name__}
                )
                self._record_substitution(name, model, phase, str(e), last=last)
                continue

            substituted = name != first_choice
            self.metrics.record_generation(
                name,
                completion.model,
                phase=phase,
                duration_ms=(time.perf_counter() - start) * 1000.0,
                tokens_in=completion.usage.input_tokens,
                tokens_out=completion.usage.output_tokens,
                estimated=completion.usage.estimated,
                fallback=substituted,
            )
            if substituted:
                logger.info(
                    "Generation served by fallback backend",
                    phase=phase,
                    requested=first_choice,
                    backend=name,
                    model=completion.model,
                )
            return GenerationResponse(
                text=completion.text,
                backend=name,
                model=completion.model,
                tier=phase,
                usage=completion.usage,
                fallback_from=first_choice if substituted else None,
                digest=request.digest,
            )

        raise ExhaustedFallbackError(phase, attempts)

    async def generate(
        self,
        record: CanonicalRecord,
        context: Optional[RetrievalResult] = None,
        *,
        prompt: Optional[str] = None,
        backend: Optional[str] = None,
    ) -> GenerationResponse:
        context = context or RetrievalResult()
        degraded = False
        try:
            extraction = await self.run_phase(
                GenerationRequest(record=record, context=context, tier=PHASE_EXTRACT, backend=backend)
            )
            digest = extraction.text
        except ExhaustedFallbackError as e:
            logger.warning(
                "Extraction phase skipped; passing facts through",
                cve_id=record.id,
                attempts=e.attempts,
            )
            self.metrics.increment("extraction_skipped")
            digest = record.to_facts()
            degraded = True

        response = await self.run_phase(
            GenerationRequest(
                record=record,
                context=context,
                tier=PHASE_SYNTHESIZE,
                prompt=prompt,
                digest=digest,
                backend=backend,
            )
        )
        return response.model_copy(update={"degraded": degraded, "digest": digest})

    async def close(self) -> None:
        for backend in self.backends.values():
            await backend.close()


def create_dispatcher(
    http: ResilientHttpClient,
    settings: Optional[Settings] = None,
    *,
    metrics: Optional[MetricsFacade] = None,
) -> GenerationDispatcher:
    settings = settings or get_settings()
    return GenerationDispatcher(
        create_backends(http, settings),
        preference=settings.backend_preference,
        metrics=metrics,
    )
