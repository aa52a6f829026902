"""HTML email templates.

Every interpolated value goes through ``html.escape``. Links are only
rendered when the URL is present, so a failed onboarding step shows a
placeholder instead of a dead link.
"""

from __future__ import annotations

import html
from collections.abc import Callable
from typing import Any

from clientflow.notifications.models import EmailSpec, RenderedEmail

_PLACEHOLDER = "We're still setting this up and will send the link shortly."


def _e(value: Any) -> str:
    return html.escape(str(value if value is not None else ""))


def _layout(brand: str, title: str, body: str, accent: str = "#4f46e5") -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <div style="border-left: 4px solid {accent}; padding: 12px;">
            <h2 style="margin: 0 0 12px 0; color: {accent};">{_e(title)}</h2>
            {body}
        </div>
        <p style="font-size: 11px; color: #999; margin-top: 16px;">{_e(brand)}</p>
    </div>
    """


def _link_row(label: str, url: str | None) -> str:
    if url:
        return f'<li><strong>{_e(label)}:</strong> <a href="{_e(url)}">{_e(url)}</a></li>'
    return f"<li><strong>{_e(label)}:</strong> {_e(_PLACEHOLDER)}</li>"


def client_welcome(ctx: dict[str, Any], brand: str) -> RenderedEmail:
    company = ctx.get("company_name", "")
    body = f"""
        <p>Hi {_e(ctx.get("first_name") or "there")},</p>
        <p>Welcome to {_e(brand)}! Your workspace for {_e(company)} is ready.</p>
        <ul>
            {_link_row("Project board", ctx.get("linear_project_url"))}
            {_link_row("Design file", ctx.get("figma_file_url"))}
            {_link_row("Repository", ctx.get("repo_url"))}
            {_link_row("Manage subscription", ctx.get("billing_portal_url"))}
        </ul>
        <p>Reply to this email any time with questions.</p>
    """
    return RenderedEmail(
        subject=f"Welcome to {brand}, {company}!",
        html=_layout(brand, f"Welcome, {company}", body),
    )


def onboarding_alert(ctx: dict[str, Any], brand: str) -> RenderedEmail:
    errors = ctx.get("errors") or []
    steps = ctx.get("steps") or []
    error_items = "".join(f"<li>{_e(err)}</li>" for err in errors)
    step_rows = "".join(
        f"<tr><td>{_e(s.get('step_name'))}</td>"
        f"<td>{'ok' if s.get('success') else 'FAILED'}</td>"
        f"<td>{_e(s.get('error') or '')}</td></tr>"
        for s in steps
    )
    body = f"""
        <p>Client onboarding had {len(errors)} failure(s).</p>
        <p><strong>Company:</strong> {_e(ctx.get("company_name"))}<br>
           <strong>Email:</strong> {_e(ctx.get("email"))}<br>
           <strong>Client ID:</strong> {_e(ctx.get("client_id"))}<br>
           <strong>Event:</strong> {_e(ctx.get("triggering_event_id"))}</p>
        <ul>{error_items}</ul>
        <table cellpadding="4">{step_rows}</table>
        <p>Re-run the failed steps manually.</p>
    """
    return RenderedEmail(
        subject=f"Onboarding failures for {ctx.get('company_name', 'unknown client')}",
        html=_layout(brand, "Onboarding needs attention", body, accent="#cc0000"),
    )


def payment_failed(ctx: dict[str, Any], brand: str) -> RenderedEmail:
    amount = int(ctx.get("amount_due") or 0) / 100
    currency = str(ctx.get("currency") or "usd").upper()
    body = f"""
        <p>Hi {_e(ctx.get("first_name") or "there")},</p>
        <p>We couldn't process the latest payment of {amount:.2f} {_e(currency)}
           for {_e(ctx.get("company_name"))}.</p>
        <p>Please update your payment method:
           <a href="{_e(ctx.get("billing_portal_url"))}">manage billing</a>.</p>
    """
    return RenderedEmail(
        subject="Action needed: payment failed",
        html=_layout(brand, "Payment failed", body, accent="#ff9900"),
    )


TEMPLATES: dict[str, Callable[[dict[str, Any], str], RenderedEmail]] = {
    "client_welcome": client_welcome,
    "onboarding_alert": onboarding_alert,
    "payment_failed": payment_failed,
}


def render(spec: EmailSpec, brand: str) -> RenderedEmail:
    """Render an EmailSpec; unknown email types raise ValueError."""
    template = TEMPLATES.get(spec.email_type)
    if template is None:
        raise ValueError(f"Unknown email type: {spec.email_type}")
    context = dict(spec.context)
    context.setdefault("first_name", spec.recipient.name)
    return template(context, brand)
