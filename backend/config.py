"""
Navigator Configuration

Settings come from environment variables, as in the rest of the automation
backend. The factories below turn them into ready-to-use collaborators.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional

import boto3

from automation_backend import MCP_SERVER_URL, McpAutomationBackend
from errors import ConfigurationError
from guardrails import (
    DEFAULT_COST_CAP_USD,
    DEFAULT_ESCALATE_AFTER_ATTEMPTS,
    DEFAULT_MAX_ACTIONS_PER_STEP,
    DEFAULT_RUN_DEADLINE_SECONDS,
    DEFAULT_STEP_DEADLINE_SECONDS,
    GuardrailPolicy,
    normalize_keywords,
)
from logging_utils import safe_print
from navigation_controller import DEFAULT_MODEL, ESCALATION_MODEL, NavigationController
from planning_service import BedrockPlanningService
from resilient_invoker import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, ResilientInvoker


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}", {"variable": name}) from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", {"variable": name}) from None


@dataclass(frozen=True)
class NavigatorSettings:
    mcp_server_url: str = MCP_SERVER_URL
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    model_id: str = DEFAULT_MODEL
    escalation_model_id: str = ESCALATION_MODEL
    max_actions: int = DEFAULT_MAX_ACTIONS_PER_STEP
    step_timeout: float = DEFAULT_STEP_DEADLINE_SECONDS
    run_timeout: float = DEFAULT_RUN_DEADLINE_SECONDS
    cost_cap_usd: float = DEFAULT_COST_CAP_USD
    forbidden_actions: FrozenSet[str] = field(default_factory=frozenset)
    escalate_after: int = DEFAULT_ESCALATE_AFTER_ATTEMPTS
    retry_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_base_delay: float = DEFAULT_BASE_DELAY
    reports_dir: str = "reports"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "NavigatorSettings":
        """Read settings from ``env`` (defaults to ``os.environ``)."""
        env = os.environ if env is None else env
        forbidden = normalize_keywords((env.get('NAV_FORBIDDEN_ACTIONS') or "").split(","))
        return cls(
            mcp_server_url=env.get('MCP_SERVER_URL') or MCP_SERVER_URL,
            aws_region=env.get('AWS_REGION') or "us-east-1",
            aws_access_key_id=env.get('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=env.get('AWS_SECRET_ACCESS_KEY'),
            model_id=env.get('BEDROCK_MODEL_ID') or DEFAULT_MODEL,
            escalation_model_id=env.get('BEDROCK_ESCALATION_MODEL_ID') or ESCALATION_MODEL,
            max_actions=_env_int(env, 'NAV_MAX_ACTIONS', DEFAULT_MAX_ACTIONS_PER_STEP),
            step_timeout=_env_float(env, 'NAV_STEP_TIMEOUT', DEFAULT_STEP_DEADLINE_SECONDS),
            run_timeout=_env_float(env, 'NAV_RUN_TIMEOUT', DEFAULT_RUN_DEADLINE_SECONDS),
            cost_cap_usd=_env_float(env, 'NAV_COST_CAP_USD', DEFAULT_COST_CAP_USD),
            forbidden_actions=forbidden,
            escalate_after=_env_int(env, 'NAV_ESCALATE_AFTER', DEFAULT_ESCALATE_AFTER_ATTEMPTS),
            retry_attempts=_env_int(env, 'NAV_RETRY_ATTEMPTS', DEFAULT_MAX_ATTEMPTS),
            retry_base_delay=_env_float(env, 'NAV_RETRY_BASE_DELAY', DEFAULT_BASE_DELAY),
            reports_dir=env.get('NAV_REPORTS_DIR') or "reports",
        )


def build_guardrails(settings: NavigatorSettings) -> GuardrailPolicy:
    return GuardrailPolicy(
        max_actions_per_step=settings.max_actions,
        step_deadline=settings.step_timeout,
        run_deadline=settings.run_timeout,
        cost_cap_usd=settings.cost_cap_usd,
        forbidden_actions=settings.forbidden_actions,
        escalate_after_attempts=settings.escalate_after,
    )


def create_bedrock_client(settings: NavigatorSettings):
    """bedrock-runtime client; explicit keys win over the default AWS credential chain."""
    kwargs = {"service_name": 'bedrock-runtime', "region_name": settings.aws_region}
    if settings.aws_access_key_id and settings.aws_secret_access_key:
        kwargs["aws_access_key_id"] = settings.aws_access_key_id
        kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
    else:
        safe_print("--- [INFO] AWS keys not set, using the default AWS credential chain")
    return boto3.client(**kwargs)


def create_planner(settings: NavigatorSettings, bedrock_client=None) -> BedrockPlanningService:
    return BedrockPlanningService(bedrock_client or create_bedrock_client(settings))


def create_backend(settings: NavigatorSettings) -> McpAutomationBackend:
    return McpAutomationBackend(settings.mcp_server_url)


def create_invoker(settings: NavigatorSettings) -> ResilientInvoker:
    try:
        return ResilientInvoker(max_attempts=settings.retry_attempts, base_delay=settings.retry_base_delay)
    except ValueError as e:
        raise ConfigurationError(f"Invalid retry settings: {e}") from e


def create_controller(settings: NavigatorSettings, planner=None) -> NavigationController:
    return NavigationController(
        planner or create_planner(settings),
        default_model=settings.model_id,
        escalation_model=settings.escalation_model_id,
        invoker=create_invoker(settings),
    )
