"""Client onboarding orchestration.

Runs the onboarding steps in order, one best-effort pass:

1. Linear project
2. Figma design file
3. GitHub repository (README embeds the design-file link when step 2 succeeded)
4. Welcome email (links whatever the earlier steps produced)

Failure contract:
- Each step is isolated: an error, exception or timeout becomes a failed
  StepResult and the next step still runs
- No step is retried here; retries belong to the step's own executor
- If any step failed, the admin alerter is called exactly once; an
  alerter failure is logged and does not change the returned run
- The run is persisted best-effort
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Sequence
from typing import Protocol

from clientflow.db import Database
from clientflow.onboarding.models import ClientOnboardingData, OnboardingRun, StepResult
from clientflow.onboarding.steps import Step, StepContext

logger = logging.getLogger(__name__)


class RunAlerter(Protocol):
    async def alert(self, run: OnboardingRun, data: ClientOnboardingData) -> None: ...


class RunStore(Protocol):
    async def save(self, run: OnboardingRun) -> None: ...


class PostgresRunStore:
    def __init__(self, db: Database):
        self._db = db

    async def save(self, run: OnboardingRun) -> None:
        record = run.to_dict()
        async with self._db.connection() as conn:
            await conn.execute(
                "INSERT INTO onboarding_runs (client_id, triggering_event_id, steps, "
                "overall_success, started_at, completed_at) VALUES (%s, %s, %s::jsonb, %s, %s, %s)",
                (
                    run.client_id,
                    run.triggering_event_id,
                    json.dumps(record["steps"], default=str),
                    run.overall_success,
                    run.started_at,
                    run.completed_at,
                ),
            )


class OnboardingOrchestrator:
    def __init__(
        self,
        steps: Sequence[Step],
        alerter: RunAlerter | None = None,
        run_store: RunStore | None = None,
        step_timeout: float = 30.0,
    ):
        self._steps = list(steps)
        self._alerter = alerter
        self._run_store = run_store
        self._step_timeout = step_timeout

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self._steps]

    async def _run_step(self, step: Step, ctx: StepContext) -> StepResult:
        try:
            return await asyncio.wait_for(step.execute(ctx), timeout=self._step_timeout)
        except asyncio.TimeoutError:
            return StepResult(step.name, success=False, error=f"Timed out after {self._step_timeout:g}s")
        except Exception as e:
            logger.exception("Onboarding step %s raised", step.name)
            return StepResult(step.name, success=False, error=str(e) or type(e).__name__)

    async def run(self, data: ClientOnboardingData, triggering_event_id: str) -> OnboardingRun:
        run = OnboardingRun(
            client_id=data.client_id,
            triggering_event_id=triggering_event_id,
            labels={step.name: step.label for step in self._steps},
        )
        run.start()
        started = time.monotonic()
        logger.info(
            "Starting client onboarding: company=%s client=%s event=%s",
            data.company_name,
            data.client_id,
            triggering_event_id,
        )

        ctx = StepContext(data=data)
        for index, step in enumerate(self._steps, start=1):
            logger.info("Onboarding step %d/%d: %s", index, len(self._steps), step.label)
            result = await self._run_step(step, ctx)
            run.steps.append(result)
            if result.success:
                logger.info("Onboarding step %s succeeded", step.name)
            else:
                logger.error("Onboarding step %s failed: %s", step.name, result.error)

        run.complete()
        succeeded = sum(1 for s in run.steps if s.success)
        logger.info(
            "Client onboarding complete: %d/%d steps in %.2fs (client=%s)",
            succeeded,
            len(run.steps),
            time.monotonic() - started,
            data.client_id,
        )

        if not run.overall_success and self._alerter is not None:
            try:
                await self._alerter.alert(run, data)
            except Exception:
                logger.exception("Admin alert failed for client %s", data.client_id)

        if self._run_store is not None:
            try:
                await self._run_store.save(run)
            except Exception:
                logger.exception("Failed to persist onboarding run for client %s", data.client_id)

        return run
