"""
Provider cascade orchestrator.

Walks the request's provider groups strictly in order and returns the first
object that parses and passes the shape check. Every attempt is bounded by a
timeout derived from the request's remaining budget and lands in the trace.

State machine:

  init ──► trying-group(i) ──► success
                 │  ├──► aborted             (fatal fault)
                 │  ├──► deadline-exceeded   (budget expired before an attempt)
                 │  └──► trying-group(i+1)   (group exhausted or quota fault)
                 └──────► exhausted          (no groups left)

Fault handling inside a group:
  fatal              abort the whole cascade
  quota              skip the rest of this group
  transient/unknown  next provider in this group
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple, Optional

import structlog

from structgen.budget import BudgetManager, Clock
from structgen.config import GenerationConfig
from structgen.errors import (
    ConfigError,
    ParseError,
    ProviderTimeoutError,
    ShapeError,
    classify_error,
    error_code_of,
    status_code_of,
    summarize_error,
)
from structgen.json_text import ParsedJson, parse_json_text
from structgen.models import (
    AttemptOutcome,
    AttemptRecord,
    FailureKind,
    FaultCategory,
    GenerationFailure,
    GenerationOptions,
    GenerationRequest,
    GenerationTrace,
    ParsedResult,
    ProviderDescriptor,
    ProviderGroup,
)
from structgen.observability import metrics as obs_metrics
from structgen.providers.base import ProviderClient
from structgen.validation import validate_shape

logger = structlog.get_logger()


class CascadeState(str, Enum):
    INIT = "init"
    TRYING_GROUP = "trying-group"
    SUCCESS = "success"
    ABORTED = "aborted"
    DEADLINE_EXCEEDED = "deadline-exceeded"
    EXHAUSTED = "exhausted"


class FaultAction(str, Enum):
    NEXT_PROVIDER = "next-provider"
    NEXT_GROUP = "next-group"
    ABORT = "abort"


class GroupEvent(str, Enum):
    """How a provider group ended."""

    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    DEADLINE = "deadline"
    EXHAUSTED = "exhausted"


def fault_action(category: FaultCategory) -> FaultAction:
    if category == FaultCategory.FATAL:
        return FaultAction.ABORT
    if category == FaultCategory.QUOTA:
        return FaultAction.NEXT_GROUP
    # transient, and unknown treated conservatively as transient
    return FaultAction.NEXT_PROVIDER


def transition(
    state: CascadeState,
    group_index: int,
    group_count: int,
    event: GroupEvent,
) -> tuple[CascadeState, int]:
    """Next (state, group index) after a group ends with `event`."""
    if state is not CascadeState.TRYING_GROUP:
        raise ValueError(f"No transitions out of {state.value}")
    if event is GroupEvent.SUCCEEDED:
        return CascadeState.SUCCESS, group_index
    if event is GroupEvent.ABORTED:
        return CascadeState.ABORTED, group_index
    if event is GroupEvent.DEADLINE:
        return CascadeState.DEADLINE_EXCEEDED, group_index
    if group_index + 1 < group_count:
        return CascadeState.TRYING_GROUP, group_index + 1
    return CascadeState.EXHAUSTED, group_index


class SecondaryRepairer:
    """Asks a small fast model to rewrite malformed output as valid JSON.

    Runs against the same request deadline as the provider attempts and only
    when the budget still allows at least `min_budget` seconds.
    """

    PROMPT_TEMPLATE = (
        "Fix the following into a SINGLE strictly valid JSON object.\n"
        "Rules:\n"
        "- Output ONLY JSON, no markdown fences, no extra text.\n"
        "- Preserve the schema and content as much as possible.\n\n"
        "INPUT:\n{raw}"
    )

    def __init__(
        self,
        client: ProviderClient,
        models: list[str],
        *,
        provider_name: str = "openrouter",
        max_tokens: int = 1200,
        min_budget: float = 3.0,
        max_timeout: float = 12.0,
    ) -> None:
        self.client = client
        self.models = list(models)
        self.provider_name = provider_name
        self.options = GenerationOptions(max_output_tokens=max_tokens, temperature=0.0)
        self.min_budget = min_budget
        self.max_timeout = max_timeout

    def allowance(self, budget: BudgetManager) -> float:
        return budget.allocate(self.max_timeout, 0.0)

    def can_run(self, budget: BudgetManager) -> bool:
        return bool(self.models) and not budget.expired() and self.allowance(budget) >= self.min_budget

    async def repair(self, raw: str, budget: BudgetManager) -> Optional[str]:
        """Repaired text from the first repair model that answers, or None."""
        prompt = self.PROMPT_TEMPLATE.format(raw=raw)
        for model in self.models:
            if not self.can_run(budget):
                logger.info("json_repair_budget_exhausted", model=model, remaining=budget.remaining())
                break
            timeout = self.allowance(budget)
            try:
                return await asyncio.wait_for(
                    self.client.generate(model, prompt, timeout, self.options),
                    timeout=timeout,
                )
            except Exception as e:
                logger.warning(
                    "json_repair_call_failed",
                    provider=self.provider_name,
                    model=model,
                    error=summarize_error(e),
                )
        return None


class _AttemptResult(NamedTuple):
    data: Optional[dict[str, Any]]
    fault: Optional[FaultCategory] = None


@dataclass
class _CascadeRun:
    """Mutable state of one run(); never shared between requests."""

    request: GenerationRequest
    budget: BudgetManager
    trace: GenerationTrace
    repair_used: bool = False
    result: Optional[ParsedResult] = None
    last_error: Optional[BaseException] = None
    fatal_error: Optional[BaseException] = None
    faults: list[FaultCategory] = field(default_factory=list)


class CascadeOrchestrator:
    """Runs generation requests against registered provider clients."""

    def __init__(
        self,
        clients: Mapping[str, ProviderClient],
        config: Optional[GenerationConfig] = None,
        repairer: Optional[SecondaryRepairer] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._clients = dict(clients)
        self._cfg = config or GenerationConfig()
        self._repairer = repairer
        self._clock = clock

    # ── Public ──

    async def run(self, request: GenerationRequest) -> ParsedResult | GenerationFailure:
        """Walk the cascade once. Never raises for provider or parse failures."""
        run = _CascadeRun(
            request=request,
            budget=BudgetManager(request.deadline, self._cfg.safety_margin, self._clock),
            trace=GenerationTrace(started_at=self._clock()),
        )
        obs_metrics.generation_started()

        problem = self._config_problem(request)
        if problem:
            run.fatal_error = ConfigError(problem)
            return self._finish(run, CascadeState.ABORTED)

        groups = request.provider_groups
        run.trace.mark(
            "validated-input",
            now=self._clock(),
            groups=len(groups),
            providers=request.provider_count,
            fast_mode=request.fast_mode,
        )
        run.trace.mark(
            "budgets-computed",
            now=self._clock(),
            remaining=round(run.budget.remaining(), 3),
            remote_timeout=round(self._attempt_timeout(run, local=False), 3),
            local_timeout=round(self._attempt_timeout(run, local=True), 3),
        )
        run.trace.mark("providers-started", now=self._clock())

        state, index = CascadeState.TRYING_GROUP, 0
        while state is CascadeState.TRYING_GROUP:
            event = await self._run_group(run, index, groups[index])
            state, index = transition(state, index, len(groups), event)
        return self._finish(run, state)

    # ── Cascade ──

    def _config_problem(self, request: GenerationRequest) -> Optional[str]:
        if request.provider_count == 0:
            return "No usable provider configured"
        missing = sorted({
            d.name for group in request.provider_groups for d in group if d.name not in self._clients
        })
        if missing:
            return f"No client registered for provider(s): {', '.join(missing)}"
        return None

    async def _run_group(self, run: _CascadeRun, index: int, group: ProviderGroup) -> GroupEvent:
        for position, descriptor in enumerate(group):
            if run.budget.expired():
                logger.warning(
                    "generation_deadline_reached",
                    group=index,
                    provider=descriptor.label,
                    attempts=len(run.trace.attempts),
                )
                return GroupEvent.DEADLINE

            result = await self._attempt(run, descriptor)
            if result.data is not None:
                run.result = ParsedResult(
                    data=result.data,
                    provider=descriptor.name,
                    model=descriptor.model,
                    trace=run.trace,
                )
                return GroupEvent.SUCCEEDED

            action = fault_action(result.fault or FaultCategory.UNKNOWN)
            if action is FaultAction.ABORT:
                return GroupEvent.ABORTED
            if action is FaultAction.NEXT_GROUP:
                logger.warning(
                    "provider_group_skipped",
                    group=index,
                    provider=descriptor.label,
                    skipped=len(group) - position - 1,
                    reason="quota",
                )
                obs_metrics.record_group_fallback(index, "quota")
                return GroupEvent.EXHAUSTED

        obs_metrics.record_group_fallback(index, "exhausted")
        return GroupEvent.EXHAUSTED

    def _attempt_timeout(self, run: _CascadeRun, local: bool) -> float:
        ceiling = self._cfg.attempt_ceiling(local=local, fast_mode=run.request.fast_mode)
        return run.budget.allocate(ceiling, self._cfg.min_attempt_timeout)

    def _options_for(self, descriptor: ProviderDescriptor, fast_mode: bool) -> GenerationOptions:
        options = descriptor.options
        if not fast_mode:
            return options
        cap = self._cfg.fast_max_tokens
        if options.max_output_tokens is None or options.max_output_tokens > cap:
            return options.model_copy(update={"max_output_tokens": cap})
        return options

    async def _attempt(self, run: _CascadeRun, descriptor: ProviderDescriptor) -> _AttemptResult:
        client = self._clients[descriptor.name]
        timeout = self._attempt_timeout(run, descriptor.is_local)
        options = self._options_for(descriptor, run.request.fast_mode)
        started = self._clock()

        logger.info(
            "generation_attempt_started",
            provider=descriptor.label,
            timeout=round(timeout, 2),
            remaining=round(run.budget.remaining(), 2),
            max_tokens=options.max_output_tokens,
        )
        try:
            async with obs_metrics.track_attempt(provider=descriptor.name, model=descriptor.model):
                raw = await asyncio.wait_for(
                    client.generate(descriptor.model, run.request.prompt, timeout, options),
                    timeout=timeout,
                )
        except asyncio.TimeoutError:
            error = ProviderTimeoutError(
                f"{descriptor.label} timed out after {timeout:.1f}s",
                provider=descriptor.name,
                model=descriptor.model,
            )
            return self._record_failure(run, descriptor, started, error, AttemptOutcome.PROVIDER_ERROR)
        except Exception as e:
            return self._record_failure(run, descriptor, started, e, AttemptOutcome.PROVIDER_ERROR)

        try:
            parsed = await self._parse(run, raw)
        except ParseError as e:
            return self._record_failure(run, descriptor, started, e, AttemptOutcome.PARSE_FAILED)

        now = self._clock()
        run.trace.record_attempt(AttemptRecord(
            provider=descriptor.name,
            model=descriptor.model,
            started_at=started - run.trace.started_at,
            duration=now - started,
            outcome=AttemptOutcome.SUCCESS,
        ))
        obs_metrics.record_attempt(descriptor.name, AttemptOutcome.SUCCESS.value)
        logger.info(
            "generation_attempt_succeeded",
            provider=descriptor.label,
            duration=round(now - started, 2),
            parse_stage=parsed.stage,
        )
        return _AttemptResult(data=parsed.value)

    def _record_failure(
        self,
        run: _CascadeRun,
        descriptor: ProviderDescriptor,
        started: float,
        error: BaseException,
        outcome: AttemptOutcome,
    ) -> _AttemptResult:
        fault = classify_error(error)
        now = self._clock()
        run.trace.record_attempt(AttemptRecord(
            provider=descriptor.name,
            model=descriptor.model,
            started_at=started - run.trace.started_at,
            duration=now - started,
            outcome=outcome,
            fault=fault,
            error=summarize_error(error),
            status_code=status_code_of(error),
            error_code=error_code_of(error) or None,
        ))
        run.last_error = error
        run.faults.append(fault)
        if fault == FaultCategory.FATAL:
            run.fatal_error = error
        obs_metrics.record_attempt(descriptor.name, outcome.value, fault.value)
        logger.warning(
            "generation_attempt_failed",
            provider=descriptor.label,
            outcome=outcome.value,
            fault=fault.value,
            status=status_code_of(error),
            error=summarize_error(error, max_len=120),
        )
        return _AttemptResult(data=None, fault=fault)

    # ── Parsing ──

    async def _parse(self, run: _CascadeRun, raw: str) -> ParsedJson:
        """Extraction/repair chain, then the shape check. Raises ParseError."""
        try:
            parsed = parse_json_text(raw)
        except ParseError:
            repaired = await self._secondary_repair(run, raw)
            if repaired is None:
                raise
            parsed = repaired

        check = validate_shape(parsed.value, run.request.expected_shape)
        if not check.ok:
            raise ShapeError(f"Response format invalid: {check.reason}", stage="validate", preview=raw[:200])
        return parsed

    async def _secondary_repair(self, run: _CascadeRun, raw: str) -> Optional[ParsedJson]:
        if self._repairer is None or run.repair_used:
            return None
        if not self._repairer.can_run(run.budget):
            run.trace.mark("secondary-repair", now=self._clock(), status="skipped")
            obs_metrics.record_repair_call("skipped")
            return None
        run.repair_used = True
        text = await self._repairer.repair(raw, run.budget)
        repaired = None
        if text:
            try:
                repaired = ParsedJson(parse_json_text(text).value, "secondary-repair")
            except ParseError as e:
                logger.warning("json_repair_output_invalid", error=summarize_error(e, max_len=120))
        status = "repaired" if repaired else "failed"
        run.trace.mark("secondary-repair", now=self._clock(), status=status)
        obs_metrics.record_repair_call(status)
        return repaired

    # ── Outcome ──

    def _exhausted_kind(self, run: _CascadeRun) -> FailureKind:
        if run.budget.expired():
            return FailureKind.DEADLINE_EXCEEDED
        failed = run.trace.failed_attempts
        if failed and all(a.fault == FaultCategory.QUOTA for a in failed):
            return FailureKind.QUOTA_EXHAUSTED
        if failed and all(a.outcome == AttemptOutcome.PARSE_FAILED for a in failed):
            return FailureKind.PARSE_ERROR
        return FailureKind.ALL_PROVIDERS_FAILED

    def _finish(self, run: _CascadeRun, state: CascadeState) -> ParsedResult | GenerationFailure:
        elapsed = run.budget.elapsed()
        if state is CascadeState.SUCCESS and run.result is not None:
            run.trace.mark("success", now=self._clock(), provider=run.result.provider, model=run.result.model)
            obs_metrics.generation_completed("success", elapsed)
            logger.info(
                "generation_succeeded",
                provider=run.result.provider,
                model=run.result.model,
                attempts=len(run.trace.attempts),
                elapsed=round(elapsed, 2),
            )
            return run.result

        if state is CascadeState.ABORTED:
            fatal = run.fatal_error
            if isinstance(fatal, ConfigError):
                kind, message = FailureKind.CONFIG_ERROR, str(fatal)
            else:
                kind, message = FailureKind.AUTH_ERROR, "Provider rejected credentials; cascade aborted"
            run.trace.mark("aborted", now=self._clock(), kind=kind.value)
            last = fatal
        elif state is CascadeState.DEADLINE_EXCEEDED:
            kind = FailureKind.DEADLINE_EXCEEDED
            message = "Generation timed out before any provider succeeded"
            run.trace.mark("deadline-exceeded", now=self._clock())
            last = run.last_error
        else:
            kind = self._exhausted_kind(run)
            message = {
                FailureKind.DEADLINE_EXCEEDED: "Generation timed out before any provider succeeded",
                FailureKind.QUOTA_EXHAUSTED: "All providers are rate limited or out of quota",
                FailureKind.PARSE_ERROR: "No provider returned valid JSON of the expected shape",
            }.get(kind, "All providers failed to respond")
            run.trace.mark("exhausted", now=self._clock(), kind=kind.value)
            last = run.last_error

        obs_metrics.generation_completed(kind.value, elapsed)
        logger.error(
            "generation_failed",
            kind=kind.value,
            attempts=len(run.trace.attempts),
            elapsed=round(elapsed, 2),
            error=summarize_error(last) if last else None,
        )
        return GenerationFailure(
            kind=kind,
            message=message,
            last_error=summarize_error(last) if last else None,
            trace=run.trace,
        )
