"""
LLM Tools Definition Module

Defines the tool schemas the planning service sends to Anthropic Claude on
Bedrock. The planner is always forced to answer through exactly one of them:
propose_action while planning, report_verification while verifying.
"""

from navigation_types import ACTION_KINDS

PROPOSE_ACTION_TOOL = "propose_action"
REPORT_VERIFICATION_TOOL = "report_verification"

propose_action_tool = {
    "name": PROPOSE_ACTION_TOOL,
    "description": "Propose the single next UI action that moves the app toward the goal. Read the accessibility tree first: prefer tap_element with the node's [id=...] value (most reliable), fall back to tap_coordinates using the centre of the node's @(x,y wxh) frame only when the node has no id. Use type_text only after the target input field has focus. scroll direction refers to WHERE YOU WANT TO GO: scroll('down') reveals content below. Use wait when the screen is still loading. Always explain the choice in reasoning.",
    "input_schema": {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": list(ACTION_KINDS),
                "description": "Kind of action to perform"
            },
            "reasoning": {"type": "string", "description": "Why this action moves toward the goal"},
            "element_id": {"type": "string", "description": "tap_element: identifier of the node to tap"},
            "x": {"type": "number", "description": "tap_coordinates: X coordinate in screen points"},
            "y": {"type": "number", "description": "tap_coordinates: Y coordinate in screen points"},
            "text": {"type": "string", "description": "type_text: text to type into the focused field"},
            "direction": {"type": "string", "enum": ["up", "down", "left", "right"], "description": "scroll: direction to move"},
            "amount": {"type": "number", "description": "scroll: fraction of the screen to travel (0.0 to 1.0, default 0.5)"},
            "start_x": {"type": "number", "description": "swipe: start X coordinate"},
            "start_y": {"type": "number", "description": "swipe: start Y coordinate"},
            "end_x": {"type": "number", "description": "swipe: end X coordinate"},
            "end_y": {"type": "number", "description": "swipe: end Y coordinate"},
            "button": {"type": "string", "enum": ["home", "back"], "description": "press_button: hardware button to press"},
            "duration_ms": {"type": "integer", "description": "wait: how long to wait in milliseconds (default 1000)"}
        },
        "required": ["action", "reasoning"]
    }
}

report_verification_tool = {
    "name": REPORT_VERIFICATION_TOOL,
    "description": "Report whether the goal has been reached on the CURRENT screen. Judge only from the accessibility tree you are given: the goal is reached when the screen shows the state the goal describes, not when an action toward it was merely attempted.",
    "input_schema": {
        "type": "object",
        "properties": {
            "goal_reached": {"type": "boolean", "description": "True only if the current screen satisfies the goal"},
            "reasoning": {"type": "string", "description": "What on the screen supports the verdict"}
        },
        "required": ["goal_reached", "reasoning"]
    }
}


def forced_tool_choice(tool_name: str) -> dict:
    """tool_choice block that makes Claude answer through ``tool_name``."""
    return {"type": "tool", "name": tool_name}
