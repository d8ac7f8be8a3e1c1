"""
Policy model and evaluation.

Modules of interest:
- models: Policy kinds, conditions, context and decisions.
- builders: Fluent construction of validated policies.
- evaluators: One pure evaluator per policy kind.
- engine: Single and batch evaluation with deadlines and telemetry.
- loader: Policy documents (YAML/dicts) and policy sources.
- masking: Applying masking decisions to payloads.
"""
