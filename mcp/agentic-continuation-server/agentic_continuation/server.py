#!/usr/bin/env python3
"""
Agentic Continuation MCP Server

A unified MCP server that exposes delegation and continuation tools to a host
coding-agent runtime, and keeps the session moving on its own: it listens to
the host's lifecycle event stream and injects continuation prompts when the
agent goes idle with work left.

Environment:
  AGENTIC_CONTINUATION_HOST_URL     host REST base URL (default http://127.0.0.1:4096)
  AGENTIC_CONTINUATION_PROJECT_DIR  project root for .omc/ state (default: cwd)
  AGENTIC_CONTINUATION_DEBUG        "true" for debug logging
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    Tool,
    TextContent,
    Resource,
    ResourceTemplate,
)

from .config_tools import config_get_background_task, config_get_effective, config_get_model_mapping
from .delegation_tools import DelegationTools
from .event_pump import EventPump
from .host import HostClient, HttpHostClient
from .model_resolver import ModelResolver
from .orchestrator import ContinuationOrchestrator
from .resources import RESOURCE_DESCRIPTIONS, RESOURCE_TEMPLATES, resolve_resource
from .task_pool import TaskPool

DEFAULT_HOST_URL = "http://127.0.0.1:4096"

# stdout carries the MCP protocol; basicConfig logs to stderr
logging.basicConfig(
    level=logging.DEBUG if os.environ.get("AGENTIC_CONTINUATION_DEBUG", "").lower() == "true" else logging.INFO
)
logger = logging.getLogger(__name__)

server = Server("agentic-continuation-server")


@dataclass
class Runtime:
    host: HostClient
    project_dir: str
    config: dict
    pool: TaskPool
    orchestrator: ContinuationOrchestrator
    delegation: DelegationTools


def build_runtime(host: HostClient, project_dir: str, config: Optional[dict] = None) -> Runtime:
    if config is None:
        config = config_get_effective(project_dir)["config"]
    pool = TaskPool(host, config_get_background_task(config))
    resolver = ModelResolver(config_get_model_mapping(config), config.get("agents") or {})
    orchestrator = ContinuationOrchestrator(host, project_dir, config, pool)
    orchestrator.restore()
    return Runtime(
        host=host,
        project_dir=project_dir,
        config=config,
        pool=pool,
        orchestrator=orchestrator,
        delegation=DelegationTools(host, pool, resolver, config, project_dir)
    )


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        project_dir = os.environ.get("AGENTIC_CONTINUATION_PROJECT_DIR") or str(Path.cwd())
        host_url = os.environ.get("AGENTIC_CONTINUATION_HOST_URL", DEFAULT_HOST_URL)
        logger.info(f"Connecting to host at {host_url} for project {project_dir}")
        _runtime = build_runtime(HttpHostClient(host_url, directory=project_dir), project_dir)
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime


SESSION_ID_PROPERTY = {
    "type": "string",
    "description": "Host session ID of the calling (parent) session"
}

TOOLS = [
    Tool(
        name="delegate_task",
        description=(
            "Delegate work to a sub-agent or a task category in a child session. "
            "Provide exactly one of subagent_type or category. With run_in_background "
            "the call returns a task_id immediately; otherwise it waits for the result."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": SESSION_ID_PROPERTY,
                "description": {
                    "type": "string",
                    "description": "Short task description (3-5 words)"
                },
                "prompt": {
                    "type": "string",
                    "description": "Full instructions for the agent"
                },
                "subagent_type": {
                    "type": "string",
                    "description": "Agent name or alias (e.g., 'oracle', 'explore', 'executor')"
                },
                "category": {
                    "type": "string",
                    "description": "Task category (e.g., 'quick', 'ultrabrain', 'visual-engineering')"
                },
                "run_in_background": {
                    "type": "boolean",
                    "description": "Run as a background task (default: false)"
                },
                "tools": {
                    "type": "object",
                    "description": "Tool grants for the child session, e.g. {\"write\": true}",
                    "additionalProperties": {"type": "boolean"}
                }
            },
            "required": ["session_id", "description", "prompt"]
        }
    ),
    Tool(
        name="background_output",
        description="Get status and output of a background task. The host is notified on completion, so block=true is rarely needed.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {
                    "type": "string",
                    "description": "Task ID returned by delegate_task (e.g., 'bg_0001')"
                },
                "block": {
                    "type": "boolean",
                    "description": "Wait for completion (default: false)"
                },
                "timeout": {
                    "type": "integer",
                    "description": "Timeout in milliseconds when blocking"
                }
            },
            "required": ["task_id"]
        }
    ),
    Tool(
        name="background_cancel",
        description="Cancel running background task(s). Use all=true to cancel every task of the session before the final answer.",
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": SESSION_ID_PROPERTY,
                "task_id": {
                    "type": "string",
                    "description": "Task to cancel"
                },
                "all": {
                    "type": "boolean",
                    "description": "Cancel all tasks of the session"
                }
            },
            "required": []
        }
    ),
    Tool(
        name="test_agents",
        description=(
            "Health-check agents. quick=true validates definitions only; "
            "quick=false invokes each primary agent and checks its reply (uses API quota)."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": SESSION_ID_PROPERTY,
                "agent_name": {
                    "type": "string",
                    "description": "Agent to test; omit to test all agents"
                },
                "quick": {
                    "type": "boolean",
                    "description": "Validate definitions without invoking agents (default: true)"
                }
            },
            "required": ["session_id"]
        }
    ),
    Tool(
        name="goal_loop_start",
        description="Start a goal loop: the session is re-prompted on every idle until it emits the completion marker or hits max_iterations.",
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": SESSION_ID_PROPERTY,
                "prompt": {
                    "type": "string",
                    "description": "The goal to work towards"
                },
                "intense": {
                    "type": "boolean",
                    "description": "Use the intense goal loop mode prompt"
                },
                "max_iterations": {
                    "type": "integer",
                    "description": "Override goal_loop.max_iterations"
                },
                "completion_marker": {
                    "type": "string",
                    "description": "Override goal_loop.completion_marker"
                }
            },
            "required": ["session_id", "prompt"]
        }
    ),
    Tool(
        name="goal_loop_cancel",
        description="Cancel the active goal loop for a session.",
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": SESSION_ID_PROPERTY
            },
            "required": ["session_id"]
        }
    ),
    Tool(
        name="qa_cycle_report",
        description="Record build/lint/test results for the active QA cycle iteration.",
        inputSchema={
            "type": "object",
            "properties": {
                "build": {"type": "string", "enum": ["pass", "fail"]},
                "lint": {"type": "string", "enum": ["pass", "fail"]},
                "test": {"type": "string", "enum": ["pass", "fail"]},
                "issues": {
                    "type": "array",
                    "description": "Issues found in this iteration",
                    "items": {
                        "type": "object",
                        "properties": {
                            "type": {"type": "string", "enum": ["build", "lint", "test"]},
                            "message": {"type": "string"},
                            "file": {"type": "string"},
                            "line": {"type": "integer"}
                        },
                        "required": ["type", "message"]
                    }
                }
            },
            "required": []
        }
    ),
    Tool(
        name="continuation_status",
        description="Modes, pause flags, pending countdowns and active drivers, for one session or all tracked sessions.",
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": {
                    "type": "string",
                    "description": "Limit to one session"
                }
            },
            "required": []
        }
    ),
    Tool(
        name="config_get_effective",
        description="Get the fully merged continuation configuration (global + project).",
        inputSchema={
            "type": "object",
            "properties": {},
            "required": []
        }
    ),
]


@server.list_tools()
async def list_tools() -> list[Tool]:
    return TOOLS


async def dispatch_tool(runtime: Runtime, name: str, arguments: dict[str, Any]) -> Any:
    if name == "delegate_task":
        return await runtime.delegation.delegate_task(
            session_id=arguments["session_id"],
            description=arguments["description"],
            prompt=arguments["prompt"],
            subagent_type=arguments.get("subagent_type"),
            category=arguments.get("category"),
            run_in_background=arguments.get("run_in_background", False),
            tools=arguments.get("tools")
        )
    elif name == "background_output":
        return await runtime.delegation.background_output(
            task_id=arguments["task_id"],
            block=arguments.get("block", False),
            timeout=arguments.get("timeout")
        )
    elif name == "background_cancel":
        return runtime.delegation.background_cancel(
            session_id=arguments.get("session_id"),
            task_id=arguments.get("task_id"),
            all=arguments.get("all", False)
        )
    elif name == "test_agents":
        return await runtime.delegation.test_agents(
            session_id=arguments["session_id"],
            agent_name=arguments.get("agent_name"),
            quick=arguments.get("quick", True)
        )
    elif name == "goal_loop_start":
        if runtime.orchestrator.pipeline.is_active(arguments["session_id"]):
            return {"success": False, "error": "A pipeline is already driving this session"}
        started = await runtime.orchestrator.goal_loop.start(
            arguments["session_id"],
            arguments["prompt"],
            intense=arguments.get("intense", False),
            max_iterations=arguments.get("max_iterations"),
            completion_marker=arguments.get("completion_marker")
        )
        return {
            "success": started,
            "state": runtime.orchestrator.goal_loop.get_state(arguments["session_id"])
        }
    elif name == "goal_loop_cancel":
        return {"success": await runtime.orchestrator.goal_loop.cancel(arguments["session_id"])}
    elif name == "qa_cycle_report":
        results = {check: arguments.get(check) for check in ("build", "lint", "test")}
        return runtime.orchestrator.qa_cycle.record_report(results, arguments.get("issues"))
    elif name == "continuation_status":
        return runtime.orchestrator.snapshot(arguments.get("session_id"))
    elif name == "config_get_effective":
        return config_get_effective(runtime.project_dir)
    return {"error": f"Unknown tool: {name}"}


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    try:
        result = await dispatch_tool(get_runtime(), name, arguments or {})
        return [TextContent(type="text", text=json.dumps(result, indent=2))]

    except Exception as e:
        logger.exception(f"Error executing tool {name}")
        return [TextContent(
            type="text",
            text=json.dumps({"error": str(e), "tool": name}, indent=2)
        )]


@server.list_resources()
async def list_resources() -> list[Resource]:
    return [
        Resource(
            uri=uri,
            name=info["name"],
            mimeType=info["mimeType"],
            description=info["description"]
        )
        for uri, info in RESOURCE_DESCRIPTIONS.items()
    ]


@server.list_resource_templates()
async def list_resource_templates() -> list[ResourceTemplate]:
    return [
        ResourceTemplate(
            uriTemplate=template,
            name=info["name"],
            mimeType=info["mimeType"],
            description=info["description"]
        )
        for template, info in RESOURCE_TEMPLATES.items()
    ]


@server.read_resource()
async def read_resource(uri) -> str:
    runtime = get_runtime()
    return resolve_resource(str(uri), runtime.project_dir, runtime.pool)


async def async_main():
    runtime = get_runtime()
    pump = EventPump(runtime.host, runtime.orchestrator)
    pump_task = asyncio.create_task(pump.run())
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )
    finally:
        pump_task.cancel()
        await asyncio.gather(pump_task, return_exceptions=True)
        await pump.close()
        runtime.orchestrator.scheduler.cancel_all()
        if isinstance(runtime.host, HttpHostClient):
            await runtime.host.aclose()


def main():
    """Entry point for the MCP server."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
