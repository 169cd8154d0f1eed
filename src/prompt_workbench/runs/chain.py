"""Chain snapshots and prompt message rendering for run execution.

A run executes a frozen snapshot of its chain's nodes (plain dicts), so
editing a chain never changes a run that is already queued.

Message configs look like::

    {
        "role": "user",
        "mode": "template",            # or "inline"
        "prompt_template_id": 3,       # latest version of the template
        "prompt_version_id": 12,       # or one exact version
        "inline_content": "Hi {{ name }}",
        "variables": {
            "name": {"source": "input", "path": "customer.name"},
            "summary": {"source": "previous_step", "step_key": "summarize"},
            "tone": {"source": "constant", "value": "formal"},
        },
    }
"""

from __future__ import annotations

import re
from typing import Any

from prompt_workbench.storage.orm import Chain

_PLACEHOLDER = re.compile(r"{{\s*(.*?)\s*}}")
_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def snapshot_chain(chain: Chain) -> list[dict[str, Any]]:
    """Serialize *chain*'s nodes, ordered by ``order_index``."""
    return [
        {
            "id": node.id,
            "name": node.name,
            "order_index": node.order_index,
            "provider_credential_id": node.provider_credential_id,
            "model_name": node.model_name,
            "model_params": node.model_params or {},
            "messages_config": list(node.messages_config or []),
            "output_schema": node.output_schema,
            "stop_on_validation_error": node.stop_on_validation_error,
        }
        for node in sorted(chain.nodes, key=lambda n: n.order_index)
    ]


def step_key(node: dict[str, Any]) -> str:
    """Key under which a node's output is visible to later nodes."""
    key = _SLUG_INVALID.sub("_", str(node.get("name", "")).lower()).strip("_")
    return key or f"step_{node.get('id')}"


def lookup(data: Any, path: str | None) -> Any:
    """Dotted-path lookup in nested dicts/lists; ``None`` when absent."""
    if not path:
        return data
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def resolve_variable(
    name: str,
    mapping: dict[str, Any] | None,
    run_input: dict[str, Any],
    step_outputs: dict[str, dict[str, Any]],
) -> Any:
    if not mapping:
        return lookup(run_input, name)

    source = mapping.get("source")
    path = mapping.get("path")
    if source == "constant":
        return mapping.get("value")
    if source == "previous_step":
        output = step_outputs.get(mapping.get("step_key") or "")
        if output is None:
            return None
        if not path:
            return output.get("parsed_output") or output.get("raw_output")
        value = lookup(output, path)
        if value is None:
            value = lookup(output.get("parsed_output"), path)
        return value
    return lookup(run_input, path or name)


def render(
    content: str,
    variables: dict[str, Any],
    run_input: dict[str, Any],
    step_outputs: dict[str, dict[str, Any]],
) -> str:
    """Substitute ``{{ name }}`` placeholders; unknown values become ''."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        value = resolve_variable(name, variables.get(name), run_input, step_outputs)
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, content)
