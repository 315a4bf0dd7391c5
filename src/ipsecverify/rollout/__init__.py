"""Mode rollout — store, polling, fleet convergence, and the scenario coordinator."""
