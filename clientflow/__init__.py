"""Clientflow — billing webhook intake and client onboarding orchestration.

Receives Stripe-scheme webhooks, processes each event exactly once, and
provisions new subscribers (project workspace, design file, repository,
welcome email) with per-step failure isolation.
"""

__version__ = "0.4.0"
