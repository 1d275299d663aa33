"""
Automation Backend

The navigation controller inspects and drives the app under test through the
AutomationBackend interface. McpAutomationBackend implements it on top of the
Appium MCP server's HTTP API:

    POST {MCP_SERVER_URL}/tools/run              {"tool": ..., "args": {...}}
    POST {MCP_SERVER_URL}/tools/initialize-appium {capabilities}
    GET  {MCP_SERVER_URL}/health

Transport failures, 5xx responses and unreadable bodies raise BackendError so
the caller's ResilientInvoker can retry them. A tool the server ran but could
not complete (success: false) is reported back as a failed action instead.
"""
from __future__ import annotations

import abc
import os
import re
import time
import xml.etree.ElementTree as ET
from typing import Any, Callable, Dict, Optional

import requests

from errors import BackendError
from logging_utils import safe_print
from navigation_types import (
    Action,
    Frame,
    PressButton,
    Scroll,
    Swipe,
    TapCoordinates,
    TapElement,
    TypeText,
    UiNode,
    UiSnapshot,
    Wait,
)

# Use 127.0.0.1 instead of localhost for better Windows compatibility
MCP_SERVER_URL = os.getenv('MCP_SERVER_URL', 'http://127.0.0.1:8080')
DEFAULT_TOOL_TIMEOUT = 30.0
DEFAULT_SCROLL_DISTANCE = 0.5
DEFAULT_SWIPE_DURATION_MS = 800
DEFAULT_CAPABILITIES = {
    "platformName": "Android",
    "appium:automationName": "UiAutomator2",
    "appium:noReset": True,
}


class AutomationBackend(abc.ABC):
    """Capability set for inspecting and manipulating the UI under test."""

    @abc.abstractmethod
    def observe(self) -> UiSnapshot:
        """Capture a fresh accessibility tree."""

    @abc.abstractmethod
    def execute(self, action: Action) -> bool:
        """Perform ``action``; False if the UI did not accept it."""

    def close(self) -> None:
        """Release the connection. The backend must not be used afterwards."""


# --------------------------------------------------------------------------- #
# Page source parsing
# --------------------------------------------------------------------------- #
_TRUE_VALUES = ("true", "1", "yes")
_TRAIT_ATTRIBUTES = ("clickable", "checked", "selected", "focused", "scrollable")


def _to_bool(value) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _TRUE_VALUES


def _parse_bounds(bounds: str) -> Optional[Frame]:
    """Android bounds look like "[x1,y1][x2,y2]"."""
    if not bounds:
        return None
    match = re.match(r"\[(-?\d+),(-?\d+)\]\[(-?\d+),(-?\d+)\]", bounds)
    if not match:
        return None
    x1, y1, x2, y2 = map(int, match.groups())
    return Frame(x=x1, y=y1, width=max(0, x2 - x1), height=max(0, y2 - y1))


def _parse_rect(element: ET.Element) -> Frame:
    """iOS XCUITest sources carry x/y/width/height attributes."""
    def _num(name: str) -> float:
        try:
            return float(element.get(name) or 0)
        except ValueError:
            return 0.0
    return Frame(x=_num('x'), y=_num('y'), width=_num('width'), height=_num('height'))


def _short_role(element: ET.Element) -> str:
    class_name = element.get('class') or element.get('type') or element.tag or 'node'
    role = class_name.split('.')[-1]
    if role.startswith("XCUIElementType") and len(role) > len("XCUIElementType"):
        role = role[len("XCUIElementType"):]
    return role


def _element_to_node(element: ET.Element) -> Optional[UiNode]:
    visible_attr = element.get('displayed') or element.get('visible')
    if visible_attr is not None and not _to_bool(visible_attr):
        return None

    text = (element.get('text') or "").strip()
    label = (element.get('content-desc') or element.get('label') or "").strip() or text
    value = (element.get('value') or "").strip()
    if not value and text and text != label:
        value = text
    identifier = (element.get('resource-id') or element.get('name') or "").strip()

    frame = _parse_bounds(element.get('bounds') or "") or _parse_rect(element)
    traits = [name for name in _TRAIT_ATTRIBUTES if _to_bool(element.get(name))]
    if element.get('enabled') is not None and not _to_bool(element.get('enabled')):
        traits.append("disabled")

    children = []
    for child in list(element):
        node = _element_to_node(child)
        if node is not None:
            children.append(node)

    return UiNode(
        role=_short_role(element),
        label=label or None,
        value=value or None,
        identifier=identifier or None,
        frame=frame,
        traits=tuple(traits),
        children=tuple(children),
    )


def parse_page_source(xml_text: str) -> UiSnapshot:
    """Turn Appium page-source XML (Android or iOS) into a UiSnapshot."""
    if not xml_text or not xml_text.strip():
        raise BackendError("Empty page source", tool="get_page_source")
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as parse_error:
        raise BackendError(f"XML parse error: {parse_error}", tool="get_page_source") from parse_error
    node = _element_to_node(root)
    if node is None:
        node = UiNode(role=_short_role(root))
    return UiSnapshot(root=node)


# --------------------------------------------------------------------------- #
# MCP HTTP backend
# --------------------------------------------------------------------------- #
class McpAutomationBackend(AutomationBackend):
    """AutomationBackend backed by the Appium MCP HTTP server."""

    def __init__(self,
                 base_url: str = MCP_SERVER_URL,
                 *,
                 session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TOOL_TIMEOUT,
                 element_strategy: str = "id",
                 sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.element_strategy = element_strategy
        self.session_id: Optional[str] = None
        self._session = session or requests.Session()
        self._sleep = sleep
        self._closed = False
        self._handlers: Dict[str, Callable[[Any], bool]] = {
            "tap_element": self._tap_element,
            "tap_coordinates": self._tap_coordinates,
            "type_text": self._type_text,
            "scroll": self._scroll,
            "swipe": self._swipe,
            "press_button": self._press_button,
            "wait": self._wait,
        }

    # ------------------------------------------------------------------ #
    # Server plumbing
    # ------------------------------------------------------------------ #
    def health(self) -> bool:
        """Check that the MCP server answers on /health."""
        try:
            response = self._session.get(f"{self.base_url}/health", timeout=2)
        except requests.RequestException as e:
            safe_print(f"--- [ERROR] Cannot connect to MCP Server at {self.base_url}: {e}")
            return False
        if response.status_code != 200:
            safe_print(f"--- [ERROR] MCP Server returned status {response.status_code}")
            return False
        return True

    def initialize_session(self, capabilities: Optional[Dict[str, Any]] = None) -> str:
        """Start an Appium session; returns the session id."""
        payload = dict(DEFAULT_CAPABILITIES)
        if capabilities:
            payload.update(capabilities)
        safe_print("--- [INIT] Initializing Appium session...")
        result = self._post("/tools/initialize-appium", payload, tool="initialize-appium")
        if not result.get('success'):
            raise BackendError(f"Failed to initialize session: {result.get('error', 'Unknown error')}",
                               tool="initialize-appium")
        self.session_id = result.get('sessionId')
        safe_print(f"--- [OK] Appium session initialized: {self.session_id}")
        return self.session_id or ""

    def wait_until_ready(self, invoker) -> UiSnapshot:
        """Observe through the invoker's warm-up mode until the UI driver answers."""
        return invoker.call_extended("observe (warm-up)", self.observe)

    def close(self) -> None:
        self._closed = True
        self._session.close()

    def _post(self, path: str, payload: Dict[str, Any], *, tool: str) -> Dict[str, Any]:
        if self._closed:
            raise BackendError(f"Tool '{tool}' called after the backend was closed", tool=tool)
        try:
            response = self._session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise BackendError(f"Tool '{tool}' request failed: {e}", tool=tool) from e

        try:
            result = response.json()
        except ValueError as e:
            raise BackendError(f"Invalid response from server for '{tool}': {response.text[:200]}",
                               tool=tool, status_code=response.status_code) from e
        if not isinstance(result, dict):
            result = {"success": True, "value": result}

        if response.status_code >= 500:
            error_msg = result.get('error') or f"{response.status_code} Server Error"
            raise BackendError(f"Tool '{tool}' failed: {error_msg}", tool=tool, status_code=response.status_code)
        if response.status_code >= 400 and 'success' not in result:
            result['success'] = False
        return result

    def run_tool(self, tool: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run one MCP tool and return its JSON payload."""
        return self._post("/tools/run", {"tool": tool, "args": args or {}}, tool=tool)

    # ------------------------------------------------------------------ #
    # AutomationBackend
    # ------------------------------------------------------------------ #
    def observe(self) -> UiSnapshot:
        result = self.run_tool("get_page_source")
        if result.get('success') is False:
            raise BackendError(f"Failed to get page source: {result.get('error', 'Unknown error')}",
                               tool="get_page_source")
        source = result.get('value') or result.get('xml') or result.get('tree')
        if isinstance(source, dict):
            return UiSnapshot(root=UiNode.from_dict(source))
        return parse_page_source(source if isinstance(source, str) else "")

    def execute(self, action: Action) -> bool:
        handler = self._handlers.get(action.action)
        if handler is None:
            safe_print(f"--- [ERROR] Unsupported action: {action.action}")
            return False
        return handler(action)

    def _tool_succeeded(self, tool: str, args: Dict[str, Any]) -> bool:
        result = self.run_tool(tool, args)
        if result.get('success') is False:
            safe_print(f"--- [FAIL] {tool}: {result.get('error', 'Unknown error')}")
            return False
        return True

    def _tap_element(self, action: TapElement) -> bool:
        return self._tool_succeeded("click", {"strategy": self.element_strategy, "value": action.element_id})

    def _tap_coordinates(self, action: TapCoordinates) -> bool:
        return self._tool_succeeded("tap", {"x": round(action.x), "y": round(action.y)})

    def _type_text(self, action: TypeText) -> bool:
        return self._tool_succeeded("type_text", {"text": action.text})

    def _scroll(self, action: Scroll) -> bool:
        distance = action.amount if action.amount is not None else DEFAULT_SCROLL_DISTANCE
        return self._tool_succeeded("scroll", {"direction": action.direction, "distance": distance})

    def _swipe(self, action: Swipe) -> bool:
        args = {
            "startX": round(action.start_x),
            "startY": round(action.start_y),
            "endX": round(action.end_x),
            "endY": round(action.end_y),
            "duration": DEFAULT_SWIPE_DURATION_MS,
        }
        return self._tool_succeeded("swipe", args)

    def _press_button(self, action: PressButton) -> bool:
        tool = "press_home_button" if action.button == "home" else "press_back_button"
        return self._tool_succeeded(tool, {})

    def _wait(self, action: Wait) -> bool:
        self._sleep(action.duration_ms / 1000)
        return True

