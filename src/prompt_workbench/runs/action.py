"""Run execution: walk the chain snapshot and call the LLM per node.

Runs inside whatever tenant context the caller established; every read
and write goes through tenant-scoped repositories, so the action does
not know (or care) whether it runs in a request or in a worker.
"""

from __future__ import annotations

import json
import time
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from prompt_workbench.llm.client import LLMClient
from prompt_workbench.llm.schemas import LLMMessage, LLMRequest, LLMResponse
from prompt_workbench.metering.listeners import derived_event_id
from prompt_workbench.metering.meter import UsageMeter
from prompt_workbench.runs.chain import render, snapshot_chain, step_key
from prompt_workbench.storage.orm import ProviderCredential, Run, RunStep
from prompt_workbench.storage.repositories import (
    ChainRepository,
    PromptVersionRepository,
    ProviderCredentialRepository,
    RunRepository,
    RunStepRepository,
)


def validate_output(
    content: str, output_schema: dict[str, Any] | None
) -> tuple[Any | None, list[str]]:
    """Parse *content* as JSON when a schema is configured.

    Only the top-level ``type: object`` and ``required`` keys are
    enforced.

    Returns:
        ``(parsed_output, validation_errors)``.
    """
    if not output_schema:
        return None, []
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        return None, [f"Output is not valid JSON: {exc.msg}"]

    errors: list[str] = []
    if output_schema.get("type") == "object" and not isinstance(parsed, dict):
        errors.append("Output must be a JSON object")
    elif isinstance(parsed, dict):
        for key in output_schema.get("required", []):
            if key not in parsed:
                errors.append(f"Missing required field: {key}")
    return parsed, errors


class RunChainAction:
    """Execute a run and persist its steps and totals.

    Args:
        client: LLM client used for every node.
        meter: Optional usage meter for token consumption.
    """

    def __init__(self, client: LLMClient, meter: UsageMeter | None = None) -> None:
        self._client = client
        self._meter = meter

    async def execute(self, session: AsyncSession, run: Run) -> Run:
        """Run every node in order, stopping at the first failed step.

        Never raises for execution problems: they end up as a ``failed``
        run with ``error_message`` set.
        """
        runs = RunRepository(session)
        run_id = run.id
        log = structlog.get_logger().bind(run_id=run_id, tenant_id=run.tenant_id)
        started = time.monotonic()
        try:
            if run.status != "running":
                run = await runs.update_status(run_id, "running")
                await session.commit()
            log.info("run_started")

            nodes = await self._load_nodes(session, run)
            credentials = await self._load_credentials(session, nodes)
            step_outputs: dict[str, dict[str, Any]] = {}
            tokens_in = tokens_out = 0
            failed = False

            for node in nodes:
                step = await self._execute_node(
                    session, run, node, credentials, step_outputs
                )
                tokens_in += step.tokens_in or 0
                tokens_out += step.tokens_out or 0
                if step.status == "failed":
                    failed = True
                    break

            run = await runs.update_status(
                run_id,
                "failed" if failed else "completed",
                error_message="A chain step failed" if failed else None,
                total_tokens_in=tokens_in or None,
                total_tokens_out=tokens_out or None,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            await session.commit()
        except Exception as exc:
            await session.rollback()
            log.error("run_execution_failed", error=str(exc), exc_info=True)
            run = await runs.update_status(
                run_id,
                "failed",
                error_message=str(exc),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            await session.commit()
            return run

        log.info("run_finished", status=run.status, tokens_in=tokens_in)
        await self._meter_tokens(run, tokens_in, tokens_out)
        return run

    async def _load_nodes(
        self, session: AsyncSession, run: Run
    ) -> list[dict[str, Any]]:
        nodes = list(run.chain_snapshot or [])
        if not nodes and run.chain_id is not None:
            chain = await ChainRepository(session).get_with_nodes(run.chain_id)
            if chain is not None:
                nodes = snapshot_chain(chain)
                await RunRepository(session).update(run.id, chain_snapshot=nodes)
        return sorted(nodes, key=lambda n: n.get("order_index", 0))

    async def _load_credentials(
        self, session: AsyncSession, nodes: list[dict[str, Any]]
    ) -> dict[int, ProviderCredential]:
        repo = ProviderCredentialRepository(session)
        credentials: dict[int, ProviderCredential] = {}
        for node in nodes:
            credential_id = node.get("provider_credential_id")
            if credential_id is None or credential_id in credentials:
                continue
            credential = await repo.get_by_id(credential_id)
            if credential is not None:
                credentials[credential_id] = credential
        return credentials

    async def _build_messages(
        self,
        session: AsyncSession,
        node: dict[str, Any],
        run_input: dict[str, Any],
        step_outputs: dict[str, dict[str, Any]],
    ) -> list[LLMMessage]:
        versions = PromptVersionRepository(session)
        messages: list[LLMMessage] = []
        for config in node.get("messages_config") or []:
            if not isinstance(config, dict):
                continue
            if config.get("mode", "template") == "inline":
                content = config.get("inline_content") or ""
            else:
                version = None
                if config.get("prompt_version_id"):
                    version = await versions.get_by_id(config["prompt_version_id"])
                elif config.get("prompt_template_id"):
                    version = await versions.latest_for_template(
                        config["prompt_template_id"]
                    )
                content = version.content if version is not None else ""
            variables = config.get("variables")
            messages.append(
                LLMMessage(
                    role=config.get("role", "user"),
                    content=render(
                        content,
                        variables if isinstance(variables, dict) else {},
                        run_input,
                        step_outputs,
                    ),
                )
            )
        return messages

    async def _execute_node(
        self,
        session: AsyncSession,
        run: Run,
        node: dict[str, Any],
        credentials: dict[int, ProviderCredential],
        step_outputs: dict[str, dict[str, Any]],
    ) -> RunStep:
        step_started = time.monotonic()
        messages = await self._build_messages(
            session, node, run.input or {}, step_outputs
        )
        params = node.get("model_params") or {}
        response: LLMResponse | None = None
        parsed_output: Any | None = None
        errors: list[str] = []
        status = "success"

        try:
            credential = credentials.get(node.get("provider_credential_id") or -1)
            if credential is None:
                msg = f"Provider credential is missing for node {node.get('id')}"
                raise RuntimeError(msg)
            response = await self._client.complete(
                LLMRequest(
                    provider=credential.provider,
                    model=node["model_name"],
                    messages=messages,
                    params=params,
                ),
                credential,
            )
            parsed_output, errors = validate_output(
                response.content, node.get("output_schema")
            )
            if errors and node.get("stop_on_validation_error"):
                status = "failed"
        except Exception as exc:
            structlog.get_logger().error(
                "run_step_failed",
                run_id=run.id,
                chain_node_id=node.get("id"),
                error=str(exc),
            )
            errors.append(f"LLM call failed: {exc}")
            status = "failed"

        step = await RunStepRepository(session).add(
            RunStep(
                run_id=run.id,
                chain_node_id=node.get("id"),
                order_index=node.get("order_index", 0),
                request_payload={
                    "model": node.get("model_name"),
                    "params": params,
                    "messages": [m.model_dump() for m in messages],
                },
                response_raw=response.raw if response else {},
                response_content=response.content if response else None,
                parsed_output=parsed_output,
                tokens_in=response.tokens_in if response else None,
                tokens_out=response.tokens_out if response else None,
                duration_ms=int((time.monotonic() - step_started) * 1000),
                validation_errors=errors or None,
                status=status,
            )
        )
        step_outputs[step_key(node)] = {
            "parsed_output": parsed_output,
            "raw_output": response.content if response else None,
            "response_raw": response.raw if response else None,
        }
        return step

    async def _meter_tokens(self, run: Run, tokens_in: int, tokens_out: int) -> None:
        if self._meter is None:
            return
        context = {
            "run_id": run.id,
            "project_id": run.project_id,
            "source": "run_finished",
        }
        usage = (("input_tokens", tokens_in), ("output_tokens", tokens_out))
        for meter, quantity in usage:
            await self._meter.meter(
                run.tenant_id,
                meter,
                quantity,
                context,
                event_id=derived_event_id(f"{meter}:{run.id}"),
            )
