"""
Apply data masking decisions to payloads.

The engine only signals masking; callers that hold the payload use these
helpers to produce the masked copy they pass downstream.
"""

import copy
import hashlib
from collections.abc import Mapping, MutableMapping
from typing import Any, Iterable, Optional

from .models import Decision, MaskingType, thaw

REDACTED = "[REDACTED]"
VISIBLE_SUFFIX = 4


def mask_value(value: Any, masking_type: MaskingType) -> Any:
    """Mask one value."""
    if value is None:
        return None

    masking_type = MaskingType(masking_type)
    text = value if isinstance(value, str) else str(value)

    if masking_type == MaskingType.FULL:
        return REDACTED

    if masking_type == MaskingType.HASH:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    # Partial: keep the last four characters, e.g. "****1234"
    if len(text) <= VISIBLE_SUFFIX:
        return "*" * len(text)
    return "*" * (len(text) - VISIBLE_SUFFIX) + text[-VISIBLE_SUFFIX:]


def _mask_path(node: Any, parts, masking_type: MaskingType):
    if not isinstance(node, MutableMapping):
        if isinstance(node, list):
            # Paths continue through every element of a list
            for item in node:
                _mask_path(item, parts, masking_type)
        return

    head, rest = parts[0], parts[1:]
    if head not in node:
        return
    if rest:
        _mask_path(node[head], rest, masking_type)
    else:
        node[head] = mask_value(node[head], masking_type)


def apply_masking(data: Any, fields: Iterable[str], masking_type: MaskingType) -> Any:
    """Return a masked deep copy of ``data``; missing fields are ignored."""
    if not isinstance(data, (Mapping, list, tuple)):
        return data

    if isinstance(data, (dict, list)):
        masked = copy.deepcopy(data)
    else:
        # Read-only payloads (e.g. a context's data) come back as plain dicts and lists
        masked = thaw(data)

    for field_path in fields:
        parts = [p for p in field_path.split(".") if p]
        if parts and parts[0] == "data":
            parts = parts[1:]
        if parts:
            _mask_path(masked, parts, masking_type)
    return masked


def mask_from_decision(data: Any, decision: Decision, policy_id: Optional[str] = None) -> Any:
    """Apply the masking instructions found in a decision's metadata.

    Works with single-policy decisions (``{"fields", "masking_type"}``) and
    with aggregate decisions, whose metadata is keyed by policy id.
    """
    instructions = []
    metadata = decision.metadata

    if "fields" in metadata and "masking_type" in metadata:
        instructions.append(metadata)
    else:
        for key, value in metadata.items():
            if policy_id is not None and key != policy_id:
                continue
            if isinstance(value, Mapping) and "fields" in value and "masking_type" in value:
                instructions.append(value)

    masked = data
    for instruction in instructions:
        masked = apply_masking(masked, instruction["fields"], instruction["masking_type"])
    return masked
