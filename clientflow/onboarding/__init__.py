"""Client onboarding: provisioning steps run with per-step failure isolation."""
