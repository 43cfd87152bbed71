"""
Delegation Tools

Tool-facing entry points for handing work to sub-agents:

  - delegate_task:      run an agent (or a category) synchronously or in the background
  - background_output:  fetch a background task's status and result
  - background_cancel:  cancel one or all background tasks
  - test_agents:        health-check agent definitions, optionally with a live call

Every function returns a JSON-serialisable dict. Argument errors and model
resolution errors are converted into failure payloads here; nothing raises
past this module. Every delegation attempt lands in the audit log.
"""

import asyncio
import logging
import time
from typing import Any, Optional

from .agents import (
    TIERS,
    RESTRICTED_TOOLS_FOR_READ_ONLY,
    build_agent_prompt,
    get_agent,
    get_canonical_name,
    is_alias,
    list_agent_names,
)
from .categories import build_category_prompt, get_available_categories, resolve_category_config
from .config_tools import config_get_pipeline, config_is_feature_enabled
from .host import HostClient, HostError, extract_text
from .model_resolver import ModelResolutionError, ModelResolver
from .state_tools import write_audit_entry
from .task_pool import TaskPool, format_prompt_error, prompt_error, submit_with_fallback

logger = logging.getLogger(__name__)


AGENT_TEST_TOKEN = "AGENT_TEST_OK"
AGENT_TEST_TIMEOUT_SECONDS = 30.0
AGENT_TEST_PROMPT = (
    "This is an automated agent health check.\n"
    f'Reply with exactly: "{AGENT_TEST_TOKEN}"\n'
    "Do not add any other text."
)


class DelegationArgumentError(ValueError):
    """Malformed delegation arguments, rejected before any session is created."""


def validate_delegation_args(subagent_type: Optional[str], category: Optional[str]) -> None:
    if subagent_type and category:
        raise DelegationArgumentError("subagent_type and category are mutually exclusive. Provide only one.")
    if not subagent_type and not category:
        raise DelegationArgumentError("Either subagent_type or category must be provided.")


def check_tool_restrictions(
    agent_name: Optional[str],
    tools: Optional[dict[str, bool]],
    enforcement: str
) -> tuple[Optional[dict[str, bool]], list[str]]:
    """
    Compare requested tool grants against the agent's read-only restrictions.

    Returns the grants to forward and the names that violate a restriction.
    Under `strict` the violating grants are switched off; `warn` and `off`
    forward the request untouched.
    """
    if enforcement == "off" or not agent_name or not tools:
        return tools, []

    agent = get_agent(agent_name)
    if agent is None or not agent.read_only:
        return tools, []

    restricted = {t.lower() for t in RESTRICTED_TOOLS_FOR_READ_ONLY}
    violations = [name for name, granted in tools.items() if granted and name.lower() in restricted]
    if not violations or enforcement != "strict":
        return tools, violations

    stripped = dict(tools)
    for name in violations:
        stripped[name] = False
    return stripped, violations


def audit_delegation(
    project_dir: str,
    config: dict,
    session_id: str,
    agent_requested: Optional[str],
    agent_resolved: Optional[str],
    description: str,
    tools_requested: Optional[dict[str, bool]],
    blocked: bool = False,
    reason: Optional[str] = None
) -> None:
    if not config_is_feature_enabled(config, "delegation-audit"):
        return
    try:
        write_audit_entry(project_dir, {
            "session_id": session_id,
            "agent_requested": agent_requested,
            "agent_resolved": agent_resolved,
            "task_description": (description or "")[:200],
            "tools_requested": tools_requested or {},
            "blocked": blocked,
            "reason": reason
        })
    except OSError as e:
        logger.warning(f"Could not write delegation audit entry: {e}")


class DelegationTools:
    def __init__(
        self,
        host: HostClient,
        pool: TaskPool,
        resolver: ModelResolver,
        config: dict,
        project_dir: str
    ):
        self.host = host
        self.pool = pool
        self.resolver = resolver
        self.config = config
        self.project_dir = project_dir
        self.agent_overrides = config.get("agents") or {}
        self.user_categories = config.get("categories") or {}
        self.enforcement = config_get_pipeline(config).get("delegation_enforcement", "warn")

    # ------------------------------------------------------------------
    # delegate_task
    # ------------------------------------------------------------------

    async def delegate_task(
        self,
        session_id: str,
        description: str,
        prompt: str,
        subagent_type: Optional[str] = None,
        category: Optional[str] = None,
        run_in_background: bool = False,
        tools: Optional[dict[str, bool]] = None
    ) -> dict[str, Any]:
        requested = subagent_type or (f"category:{category}" if category else None)

        try:
            validate_delegation_args(subagent_type, category)
        except DelegationArgumentError as e:
            audit_delegation(
                self.project_dir, self.config, session_id, requested, None,
                description, tools, blocked=True, reason=str(e)
            )
            return {"success": False, "error": str(e)}

        parent_model = await self.pool.get_parent_session_model(session_id)

        if category:
            resolved = resolve_category_config(category, self.user_categories)
            if resolved is None:
                error = (
                    f"Unknown category '{category}'. "
                    f"Available: {', '.join(get_available_categories(self.user_categories))}"
                )
                audit_delegation(
                    self.project_dir, self.config, session_id, requested, None,
                    description, tools, blocked=True, reason=error
                )
                return {"success": False, "error": error}
            label = f"category:{category}"
            agent_name = None
            full_prompt = build_category_prompt(resolved, prompt)
            model = self.resolver.resolve_model_for_category(category, parent_model, self.user_categories)
        else:
            agent = get_agent(subagent_type)
            if agent is None or subagent_type not in list_agent_names(overrides=self.agent_overrides):
                error = (
                    f"Unknown or disabled agent '{subagent_type}'. "
                    f"Available: {', '.join(list_agent_names(overrides=self.agent_overrides))}"
                )
                audit_delegation(
                    self.project_dir, self.config, session_id, requested, None,
                    description, tools, blocked=True, reason=error
                )
                return {"success": False, "error": error}
            label = agent.name
            agent_name = agent.name
            full_prompt = build_agent_prompt(agent, prompt, self.agent_overrides.get(agent.name))
            try:
                model = self.resolver.resolve_model_for_agent_or_raise(agent.name, parent_model)
            except ModelResolutionError as e:
                audit_delegation(
                    self.project_dir, self.config, session_id, requested, agent_name,
                    description, tools, blocked=True, reason="model resolution failed"
                )
                return {"success": False, "error": str(e)}

        granted, violations = check_tool_restrictions(agent_name, tools, self.enforcement)
        blocked = bool(violations) and self.enforcement == "strict"
        reason = None
        if violations:
            reason = f"read-only agent '{agent_name}' requested {', '.join(violations)}"
            if blocked:
                logger.warning(f"Blocked tool grant: {reason}")
            else:
                logger.warning(f"Tool restriction violation (not enforced): {reason}")
        audit_delegation(
            self.project_dir, self.config, session_id, requested, agent_name or label,
            description, tools, blocked=blocked, reason=reason
        )

        if run_in_background:
            task = await self.pool.create_task(
                session_id, description, full_prompt, label, model_override=model, tools=granted
            )
            return {
                "task_id": task.id,
                "session_id": task.child_session_id,
                "status": task.status,
                "message": (
                    f"Background task {task.id} {task.status}. "
                    "Use background_output to retrieve the result."
                )
            }

        return await self._run_sync(session_id, description, full_prompt, label, model, parent_model, granted)

    async def _run_sync(self, session_id, description, full_prompt, label, model, parent_model, tools):
        child_id = None
        try:
            child_id = await self.host.create_session(session_id, f"{label}: {description}")
            response = await submit_with_fallback(self.host, child_id, full_prompt, model, parent_model, tools)
        except HostError as e:
            logger.warning(f"Synchronous delegation to {label} failed: {e}")
            return {"session_id": child_id, "status": "failed", "error": str(e)}

        error = prompt_error(response)
        if error:
            return {"session_id": child_id, "status": "failed", "error": format_prompt_error(error)}
        return {
            "session_id": child_id,
            "status": "completed",
            "result": extract_text(response.get("parts"))
        }

    # ------------------------------------------------------------------
    # Background task access
    # ------------------------------------------------------------------

    async def background_output(
        self,
        task_id: str,
        block: bool = False,
        timeout: Optional[int] = None
    ) -> dict[str, Any]:
        task = self.pool.get_task(task_id)
        if task is None:
            return {"error": f"Task {task_id} not found"}

        if block and not task.is_terminal:
            task = await self.pool.wait_for_task(task_id, timeout)
        return task.to_dict()

    def background_cancel(
        self,
        session_id: Optional[str] = None,
        task_id: Optional[str] = None,
        all: bool = False
    ) -> dict[str, Any]:
        if all:
            count = self.pool.cancel_all_tasks(session_id)
            return {"cancelled": count, "all": True}
        if task_id:
            success = self.pool.cancel_task(task_id)
            return {"cancelled": 1 if success else 0, "task_id": task_id}
        return {"error": "Provide task_id or all=true"}

    # ------------------------------------------------------------------
    # test_agents
    # ------------------------------------------------------------------

    def _quick_validate(self, agent_name: str) -> dict[str, Any]:
        started = time.monotonic()
        canonical = get_canonical_name(agent_name)
        agent = get_agent(agent_name)

        def result(status: str, message: str) -> dict[str, Any]:
            return {
                "agent": agent_name,
                "status": status,
                "message": message,
                "duration_ms": int((time.monotonic() - started) * 1000)
            }

        if agent is None:
            return result("fail", "Agent definition not found")

        missing = [f for f in ("name", "description", "system_prompt") if not getattr(agent, f)]
        if missing:
            return result("fail", f"Missing required fields: {', '.join(missing)}")
        if agent.tier and agent.tier not in TIERS:
            return result("fail", f"Invalid tier: {agent.tier}")

        kind = f"alias for {canonical}" if is_alias(agent_name) else "primary"
        return result("pass", f"Definition valid ({kind})")

    async def _full_test(self, session_id: str, agent_name: str) -> dict[str, Any]:
        started = time.monotonic()

        def result(status: str, message: str) -> dict[str, Any]:
            return {
                "agent": agent_name,
                "status": status,
                "message": message,
                "duration_ms": int((time.monotonic() - started) * 1000)
            }

        if is_alias(agent_name):
            return result("skip", f"Skipped (alias for {get_canonical_name(agent_name)})")

        quick = self._quick_validate(agent_name)
        if quick["status"] == "fail":
            return quick

        agent = get_agent(agent_name)
        parent_model = await self.pool.get_parent_session_model(session_id)
        model = self.resolver.resolve_model_for_agent(agent.name, parent_model)
        try:
            child_id = await self.host.create_session(session_id, f"Agent test: {agent_name}")
            response = await asyncio.wait_for(
                submit_with_fallback(
                    self.host, child_id, build_agent_prompt(agent, AGENT_TEST_PROMPT), model, parent_model
                ),
                AGENT_TEST_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            return result("fail", f"Test timeout after {int(AGENT_TEST_TIMEOUT_SECONDS)}s")
        except HostError as e:
            return result("fail", str(e))

        error = prompt_error(response)
        if error:
            return result("fail", format_prompt_error(error))

        text = extract_text(response.get("parts"))
        if AGENT_TEST_TOKEN in text:
            return result("pass", "Agent responded correctly")
        return result("fail", f"Unexpected response: {text[:100]}")

    async def test_agents(
        self,
        session_id: str,
        agent_name: Optional[str] = None,
        quick: bool = True
    ) -> dict[str, Any]:
        names = [agent_name] if agent_name else list_agent_names(overrides=self.agent_overrides)
        logger.info(f"Testing {len(names)} agent(s) ({'quick' if quick else 'full'})")

        results = []
        # Sequential to stay under provider rate limits
        for name in names:
            if quick:
                results.append(self._quick_validate(name))
            else:
                results.append(await self._full_test(session_id, name))

        summary = {
            "total": len(results),
            "pass": sum(1 for r in results if r["status"] == "pass"),
            "fail": sum(1 for r in results if r["status"] == "fail"),
            "skip": sum(1 for r in results if r["status"] == "skip")
        }
        logger.info(f"Agent testing complete: {summary}")
        return {"mode": "quick" if quick else "full", "summary": summary, "results": results}
