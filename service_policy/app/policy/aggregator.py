"""
Folding individual decisions into one aggregate decision.
"""

from typing import Any, Dict, List, Sequence, Tuple

from .models import Decision


def aggregate(results: Sequence[Tuple[str, Decision]]) -> Decision:
    """Combine ``(policy_id, decision)`` pairs given in evaluation order.

    ``allowed`` is the AND of all decisions, the reason is the first denial's
    reason, and metadata is keyed by policy id.
    """
    applied: List[str] = []
    metadata: Dict[str, Any] = {}
    first_denial = None

    for policy_id, decision in results:
        applied.append(policy_id)
        metadata[policy_id] = decision.metadata
        if not decision.allowed and first_denial is None:
            first_denial = decision

    if first_denial is not None:
        return Decision(allowed=False, reason=first_denial.reason, applied_policies=applied, metadata=metadata)

    if not results:
        return Decision(allowed=True, reason="No active policies to evaluate")

    return Decision(
        allowed=True,
        reason=f"All {len(results)} policies passed",
        applied_policies=applied,
        metadata=metadata,
    )
