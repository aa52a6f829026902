"""Onboarding data types: client data, provision results, step results, runs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class ClientOnboardingData:
    """Everything the onboarding steps need to know about a new client."""

    client_id: str
    company_name: str
    first_name: str
    last_name: str
    email: str
    stripe_customer_id: str
    stripe_subscription_id: str
    billing_portal_url: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class ContactInfo:
    """Contact details plus links produced by earlier steps."""

    first_name: str
    last_name: str
    email: str
    billing_portal_url: str = ""
    links: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_onboarding(
        cls, data: ClientOnboardingData, links: dict[str, str] | None = None
    ) -> ContactInfo:
        return cls(
            first_name=data.first_name,
            last_name=data.last_name,
            email=data.email,
            billing_portal_url=data.billing_portal_url,
            links=dict(links or {}),
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class ProvisionResult:
    """Return shape of every step executor's ``create``."""

    identifier: str = ""
    url: str = ""
    success: bool = False
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> ProvisionResult:
        return cls(success=False, error=error)


@dataclass
class StepResult:
    step_name: str
    success: bool
    error: str | None = None
    output_data: dict[str, Any] | None = None


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass
class OnboardingRun:
    """One best-effort pass over the onboarding steps for a client."""

    client_id: str
    triggering_event_id: str
    steps: list[StepResult] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    state: RunState = RunState.NOT_STARTED
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def start(self) -> None:
        if self.state is not RunState.NOT_STARTED:
            raise RuntimeError(f"Run already {self.state.value}")
        self.state = RunState.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def complete(self) -> None:
        if self.state is not RunState.RUNNING:
            raise RuntimeError(f"Cannot complete a run that is {self.state.value}")
        self.state = RunState.COMPLETED
        self.completed_at = datetime.now(timezone.utc)

    @property
    def overall_success(self) -> bool:
        return all(step.success for step in self.steps)

    @property
    def errors(self) -> list[str]:
        """Failure messages as ``"<Label>: <error>"`` in step order."""
        return [
            f"{self.labels.get(step.step_name, step.step_name)}: {step.error or 'Unknown error'}"
            for step in self.steps
            if not step.success
        ]

    def step(self, name: str) -> StepResult | None:
        for result in self.steps:
            if result.step_name == name:
                return result
        return None

    def summary(self) -> dict[str, Any]:
        """Operator-facing summary; a step's entry is set only if it succeeded."""

        def _output(name: str) -> dict[str, Any] | None:
            result = self.step(name)
            if result is None or not result.success:
                return None
            return result.output_data or {}

        return {
            "success": self.overall_success,
            "client_id": self.client_id,
            "linear_project": _output("linear_project"),
            "figma_file": _output("figma_file"),
            "github_repo": _output("github_repo"),
            "welcome_email": _output("welcome_email"),
            "errors": self.errors,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "triggering_event_id": self.triggering_event_id,
            "state": self.state.value,
            "steps": [asdict(step) for step in self.steps],
            "overall_success": self.overall_success,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
