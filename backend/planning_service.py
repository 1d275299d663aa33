"""
Planning Service

The navigation controller asks a PlanningService two questions per iteration:
which single action to take next (plan) and whether the goal is now reached
(verify). BedrockPlanningService answers both with Anthropic Claude on Amazon
Bedrock, forcing the reply through a tool call so it always arrives as
structured input that pydantic can validate.
"""
from __future__ import annotations

import abc
import json
from typing import Any, Dict, Optional, Sequence, Tuple

from botocore.exceptions import ClientError

from errors import MalformedResponseError
from llm_tools import forced_tool_choice, propose_action_tool, report_verification_tool
from navigation_types import (
    ActionRecord,
    PlannedAction,
    TokenUsage,
    UiSnapshot,
    Verification,
    parse_action,
    parse_verification,
)

ANTHROPIC_VERSION = "bedrock-2023-05-31"
DEFAULT_MAX_TOKENS = 1024
DEFAULT_TEMPERATURE = 0.1
DEFAULT_MAX_TREE_CHARS = 20000
DEFAULT_HISTORY_WINDOW = 10

# Bedrock error codes that will not go away by asking again.
NON_RETRYABLE_ERROR_CODES = (
    "AccessDenied",
    "ValidationException",
    "ResourceNotFound",
    "UnrecognizedClient",
)


def is_retryable_planner_error(error: BaseException) -> bool:
    """Retry everything except Bedrock errors caused by the request or the account."""
    if isinstance(error, ClientError):
        error_code = error.response.get('Error', {}).get('Code', '')
        return not any(code in error_code for code in NON_RETRYABLE_ERROR_CODES)
    return True


class PlanningService(abc.ABC):
    """Chooses the next action and judges whether the goal is reached."""

    @abc.abstractmethod
    def plan(self, goal: str, snapshot: UiSnapshot, history: Sequence[ActionRecord], model: str) -> PlannedAction:
        ...

    @abc.abstractmethod
    def verify(self, goal: str, snapshot: UiSnapshot, history: Sequence[ActionRecord], model: str) -> Verification:
        ...


# --------------------------------------------------------------------------- #
# Prompts
# --------------------------------------------------------------------------- #
PLANNER_SYSTEM_PROMPT = """
You are a Mobile Navigation Planner driving a live app through Appium, one action at a time.

RULES:
1. Decide from the CURRENT accessibility tree only. Never invent element ids that are not in the tree.
2. Propose exactly ONE action per reply through the propose_action tool.
3. Prefer tap_element with an [id=...] from the tree. Use tap_coordinates (centre of the node frame) only for nodes without an id.
4. If an earlier action failed or changed nothing, try a different element or strategy instead of repeating it.
5. If the target is not visible, scroll toward where it is likely to be. If the screen is loading, wait.
""".strip()

VERIFIER_SYSTEM_PROMPT = """
You are a strict Mobile Navigation Verifier. Given a goal and the CURRENT accessibility tree,
decide whether the app is now in the state the goal describes. Answer through the
report_verification tool. When in doubt, the goal is NOT reached.
""".strip()


def _format_tree(snapshot: UiSnapshot, max_chars: Optional[int]) -> str:
    tree_text = snapshot.to_text()
    if max_chars is not None and len(tree_text) > max_chars:
        dropped = len(tree_text) - max_chars
        tree_text = tree_text[:max_chars] + f"\n... [truncated {dropped} chars]"
    return tree_text


def format_history(history: Sequence[ActionRecord], window: int = DEFAULT_HISTORY_WINDOW) -> str:
    """Numbered list of the most recent actions, oldest first."""
    if not history:
        return "(none yet)"
    start = max(0, len(history) - window)
    lines = []
    for index, record in enumerate(history[start:], start=start + 1):
        params = ", ".join(f"{key}={value!r}" for key, value in record.params.items())
        status = "OK" if record.success else "FAILED"
        line = f"{index}. {record.action}({params}) -> {status}"
        if record.reasoning:
            line += f" - {record.reasoning}"
        lines.append(line)
    if start:
        lines.insert(0, f"({start} earlier actions omitted)")
    return "\n".join(lines)


def build_plan_prompt(goal: str,
                      snapshot: UiSnapshot,
                      history: Sequence[ActionRecord],
                      max_tree_chars: Optional[int] = DEFAULT_MAX_TREE_CHARS,
                      history_window: int = DEFAULT_HISTORY_WINDOW) -> str:
    return (
        f"GOAL: {goal}\n\n"
        f"ACTIONS SO FAR:\n{format_history(history, history_window)}\n\n"
        f"CURRENT SCREEN ({snapshot.element_count()} elements):\n{_format_tree(snapshot, max_tree_chars)}\n\n"
        "Propose the next action."
    )


def build_verify_prompt(goal: str,
                        snapshot: UiSnapshot,
                        history: Sequence[ActionRecord],
                        max_tree_chars: Optional[int] = DEFAULT_MAX_TREE_CHARS,
                        history_window: int = DEFAULT_HISTORY_WINDOW) -> str:
    return (
        f"GOAL: {goal}\n\n"
        f"ACTIONS TAKEN:\n{format_history(history, history_window)}\n\n"
        f"CURRENT SCREEN ({snapshot.element_count()} elements):\n{_format_tree(snapshot, max_tree_chars)}\n\n"
        "Has the goal been reached?"
    )


# --------------------------------------------------------------------------- #
# Bedrock
# --------------------------------------------------------------------------- #
def _usage_from(response_body: Dict[str, Any]) -> TokenUsage:
    usage = response_body.get('usage') or {}
    try:
        return TokenUsage(
            prompt_tokens=int(usage.get('input_tokens') or 0),
            completion_tokens=int(usage.get('output_tokens') or 0),
        )
    except (TypeError, ValueError):
        return TokenUsage()


class BedrockPlanningService(PlanningService):
    """PlanningService backed by the bedrock-runtime ``invoke_model`` API."""

    def __init__(self,
                 bedrock_client,
                 max_tokens: int = DEFAULT_MAX_TOKENS,
                 temperature: float = DEFAULT_TEMPERATURE,
                 max_tree_chars: Optional[int] = DEFAULT_MAX_TREE_CHARS,
                 history_window: int = DEFAULT_HISTORY_WINDOW):
        self._client = bedrock_client
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_tree_chars = max_tree_chars
        self.history_window = history_window

    def plan(self, goal, snapshot, history, model):
        prompt = build_plan_prompt(goal, snapshot, history, self.max_tree_chars, self.history_window)
        payload, usage = self._invoke(model, PLANNER_SYSTEM_PROMPT, prompt, propose_action_tool)
        return PlannedAction(action=parse_action(payload, usage), usage=usage)

    def verify(self, goal, snapshot, history, model):
        prompt = build_verify_prompt(goal, snapshot, history, self.max_tree_chars, self.history_window)
        payload, usage = self._invoke(model, VERIFIER_SYSTEM_PROMPT, prompt, report_verification_tool)
        return parse_verification(payload, usage)

    def _invoke(self, model: str, system_prompt: str, user_text: str, tool: Dict[str, Any]) -> Tuple[Any, TokenUsage]:
        """Send one forced-tool request; return the tool input and the tokens spent."""
        request_body = {
            "anthropic_version": ANTHROPIC_VERSION,
            "system": system_prompt,
            "messages": [{"role": "user", "content": [{"type": "text", "text": user_text}]}],
            "tools": [tool],
            "tool_choice": forced_tool_choice(tool["name"]),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        response = self._client.invoke_model(body=json.dumps(request_body), modelId=model)

        try:
            response_body = json.loads(response['body'].read().decode('utf-8'))
        except (KeyError, AttributeError, UnicodeDecodeError, ValueError) as e:
            raise MalformedResponseError(f"Unreadable Bedrock response from {model}: {e}") from e
        if not isinstance(response_body, dict):
            raise MalformedResponseError(f"Unexpected Bedrock response from {model}", raw=response_body)

        usage = _usage_from(response_body)
        if 'error' in response_body:
            error = response_body.get('error') or {}
            error_msg = error.get('message', 'Unknown API error') if isinstance(error, dict) else str(error)
            raise MalformedResponseError(f"API returned an error: {error_msg}", usage=usage, raw=response_body)

        for block in response_body.get('content') or []:
            if isinstance(block, dict) and block.get('type') == 'tool_use' and block.get('name') == tool["name"]:
                return block.get('input'), usage

        stop_reason = response_body.get('stop_reason')
        raise MalformedResponseError(
            f"{model} replied without a {tool['name']} call (stop_reason={stop_reason})",
            usage=usage,
            raw=response_body,
        )
