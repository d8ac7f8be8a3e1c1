"""
Policy engine package.

Evaluates access, content, rate limit, masking, fraud and compliance
policies against a request context and returns an auditable decision.

- app.policy: Policy model, builders, evaluators and the engine.
- app.collaborators: Rate limit stores and audit sinks the engine forwards to.
- app.factory: Wiring of an evaluator from configuration.

Guidelines:
- Evaluators are pure; side effects live in the engine and collaborators.
- Keep decisions deterministic and observable (metrics + logs).
"""
