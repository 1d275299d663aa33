import io
import json

import pytest
from botocore.exceptions import ClientError

from errors import MalformedResponseError
from llm_tools import propose_action_tool
from navigation_types import ACTION_KINDS, ActionRecord, TapElement, TypeText
from planning_service import (
    ANTHROPIC_VERSION,
    BedrockPlanningService,
    build_plan_prompt,
    format_history,
    is_retryable_planner_error,
)

MODEL = "anthropic.claude-3-haiku-20240307-v1:0"


class FakeBedrockClient:
    """Returns queued response bodies from invoke_model."""

    def __init__(self, *bodies):
        self.bodies = list(bodies)
        self.requests = []

    def invoke_model(self, body, modelId):
        self.requests.append((modelId, json.loads(body)))
        payload = self.bodies.pop(0)
        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        return {"body": io.BytesIO(raw)}


def _tool_reply(name, tool_input, input_tokens=120, output_tokens=30):
    return {
        "content": [
            {"type": "text", "text": "Looking at the screen."},
            {"type": "tool_use", "id": "toolu_1", "name": name, "input": tool_input},
        ],
        "stop_reason": "tool_use",
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    }


def test_plan_forces_propose_action_and_returns_usage(login_snapshot):
    client = FakeBedrockClient(_tool_reply("propose_action", {
        "action": "tap_element", "element_id": "login_button", "reasoning": "Login is visible",
    }))
    planner = BedrockPlanningService(client)
    planned = planner.plan("Log in", login_snapshot, (), MODEL)

    assert planned.action == TapElement(element_id="login_button", reasoning="Login is visible")
    assert planned.usage.prompt_tokens == 120
    assert planned.usage.completion_tokens == 30

    model_id, body = client.requests[0]
    assert model_id == MODEL
    assert body["anthropic_version"] == ANTHROPIC_VERSION
    assert body["tool_choice"] == {"type": "tool", "name": "propose_action"}
    assert [t["name"] for t in body["tools"]] == ["propose_action"]
    assert body["temperature"] == 0.1
    assert "GOAL: Log in" in body["messages"][0]["content"][0]["text"]
    assert "[id=login_button]" in body["messages"][0]["content"][0]["text"]


def test_verify_uses_report_verification(login_snapshot):
    client = FakeBedrockClient(_tool_reply("report_verification", {"goal_reached": True, "reasoning": "Home shown"}, 80, 10))
    verification = BedrockPlanningService(client).verify("Log in", login_snapshot, (), MODEL)
    assert verification.goal_reached is True
    assert verification.reasoning == "Home shown"
    assert verification.usage.total == 90
    assert client.requests[0][1]["tool_choice"]["name"] == "report_verification"


def test_reply_without_tool_call_is_malformed_but_keeps_usage(login_snapshot):
    client = FakeBedrockClient({
        "content": [{"type": "text", "text": "I think you should tap login."}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 200, "output_tokens": 15},
    })
    with pytest.raises(MalformedResponseError) as excinfo:
        BedrockPlanningService(client).plan("Log in", login_snapshot, (), MODEL)
    assert "stop_reason=end_turn" in str(excinfo.value)
    assert excinfo.value.usage.prompt_tokens == 200
    assert excinfo.value.usage.completion_tokens == 15


def test_invalid_tool_input_is_malformed_but_keeps_usage(login_snapshot):
    client = FakeBedrockClient(_tool_reply("propose_action", {"action": "teleport"}, 50, 5))
    with pytest.raises(MalformedResponseError) as excinfo:
        BedrockPlanningService(client).plan("Log in", login_snapshot, (), MODEL)
    assert excinfo.value.usage.total == 55


def test_unreadable_body_is_malformed(login_snapshot):
    client = FakeBedrockClient(b"not json")
    with pytest.raises(MalformedResponseError):
        BedrockPlanningService(client).verify("Log in", login_snapshot, (), MODEL)


def test_api_error_body_is_malformed(login_snapshot):
    client = FakeBedrockClient({"error": {"message": "overloaded"}, "usage": {"input_tokens": 1, "output_tokens": 0}})
    with pytest.raises(MalformedResponseError, match="overloaded"):
        BedrockPlanningService(client).plan("Log in", login_snapshot, (), MODEL)


def _client_error(code):
    return ClientError({"Error": {"Code": code, "Message": "boom"}}, "InvokeModel")


@pytest.mark.parametrize("error, retryable", [
    (_client_error("ThrottlingException"), True),
    (_client_error("ServiceUnavailableException"), True),
    (_client_error("ModelNotReadyException"), True),
    (_client_error("AccessDeniedException"), False),
    (_client_error("ValidationException"), False),
    (_client_error("ResourceNotFoundException"), False),
    (_client_error("UnrecognizedClientException"), False),
    (MalformedResponseError("bad reply"), True),
    (ConnectionError("reset"), True),
])
def test_is_retryable_planner_error(error, retryable):
    assert is_retryable_planner_error(error) is retryable


def test_format_history_keeps_most_recent_window():
    history = [
        ActionRecord.from_action(TapElement(element_id=f"item_{i}"), success=i % 2 == 0, timestamp=float(i))
        for i in range(5)
    ]
    text = format_history(history, window=2)
    lines = text.splitlines()
    assert lines[0] == "(3 earlier actions omitted)"
    assert lines[1] == "4. tap_element(element_id='item_3') -> FAILED"
    assert lines[2] == "5. tap_element(element_id='item_4') -> OK"
    assert format_history([]) == "(none yet)"


def test_plan_prompt_truncates_large_trees(login_snapshot):
    history = [ActionRecord.from_action(TypeText(text="hi", reasoning="greet"), True, timestamp=0.0)]
    prompt = build_plan_prompt("Say hi", login_snapshot, history, max_tree_chars=10)
    assert "1. type_text(text='hi') -> OK - greet" in prompt
    assert "[truncated" in prompt


def test_propose_action_schema_offers_every_action_kind():
    kinds = propose_action_tool["input_schema"]["properties"]["action"]["enum"]
    assert kinds == list(ACTION_KINDS)
