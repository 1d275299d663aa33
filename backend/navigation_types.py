"""
Navigation Data Types

Shared shapes passed between the automation backend, the planning service and
the navigation controller:

- UiNode / UiSnapshot: immutable accessibility tree captured on every observe
- Action variants: one pydantic model per action kind, discriminated on "action"
- ActionRecord / NavigationResult: the run log and its terminal value
"""
import time
from dataclasses import asdict, dataclass, field
from typing import Annotated, Any, Dict, Iterator, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from errors import MalformedResponseError


# --------------------------------------------------------------------------- #
# UI snapshot
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class Frame:
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)


@dataclass(frozen=True)
class UiNode:
    """One element of the accessibility tree."""
    role: str
    label: Optional[str] = None
    value: Optional[str] = None
    identifier: Optional[str] = None
    frame: Frame = field(default_factory=Frame)
    traits: Tuple[str, ...] = ()
    children: Tuple["UiNode", ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UiNode":
        """Build a node (and its subtree) from a JSON accessibility tree."""
        frame_data = data.get("frame") or data.get("rect") or {}
        frame = Frame(
            x=float(frame_data.get("x", 0) or 0),
            y=float(frame_data.get("y", 0) or 0),
            width=float(frame_data.get("width", 0) or 0),
            height=float(frame_data.get("height", 0) or 0),
        )
        children = tuple(cls.from_dict(child) for child in data.get("children") or [] if isinstance(child, dict))
        identifier = data.get("identifier") or data.get("id")
        return cls(
            role=str(data.get("role") or data.get("type") or "node"),
            label=data.get("label") or None,
            value=None if data.get("value") in (None, "") else str(data.get("value")),
            identifier=str(identifier) if identifier else None,
            frame=frame,
            traits=tuple(str(t) for t in data.get("traits") or []),
            children=children,
        )


@dataclass(frozen=True)
class UiSnapshot:
    """Accessibility tree captured at one point in time. Never mutated."""
    root: UiNode
    captured_at: float = field(default_factory=time.time)

    def walk(self) -> Iterator[UiNode]:
        """Yield every node depth-first, parents before children."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def element_count(self) -> int:
        return sum(1 for _ in self.walk())

    def to_text(self) -> str:
        """Indented outline of the tree, the form the planner reads."""
        lines: List[str] = []
        self._render(self.root, 0, lines)
        return "\n".join(lines)

    def _render(self, node: UiNode, depth: int, lines: List[str]) -> None:
        line = "  " * depth + node.role
        if node.label:
            line += f' "{node.label}"'
        if node.value:
            line += f' value="{node.value}"'
        if node.identifier:
            line += f" [id={node.identifier}]"
        if node.frame.width or node.frame.height:
            line += f" @({node.frame.x:.0f},{node.frame.y:.0f} {node.frame.width:.0f}x{node.frame.height:.0f})"
        lines.append(line)
        for child in node.children:
            self._render(child, depth + 1, lines)


# --------------------------------------------------------------------------- #
# Actions
# --------------------------------------------------------------------------- #
class _ActionBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    reasoning: str = ""

    def params(self) -> Dict[str, Any]:
        """Kind-specific parameters, without the tag and the reasoning."""
        return self.model_dump(exclude={"action", "reasoning"}, exclude_none=True)

    def serialize(self) -> str:
        return self.model_dump_json()

    def describe(self) -> str:
        params = ", ".join(f"{key}={value!r}" for key, value in self.params().items())
        return f"{self.action}({params})"  # type: ignore[attr-defined]


class TapElement(_ActionBase):
    action: Literal["tap_element"] = "tap_element"
    element_id: str = Field(min_length=1)


class TapCoordinates(_ActionBase):
    action: Literal["tap_coordinates"] = "tap_coordinates"
    x: float = Field(ge=0)
    y: float = Field(ge=0)


class TypeText(_ActionBase):
    action: Literal["type_text"] = "type_text"
    text: str = Field(min_length=1)


class Scroll(_ActionBase):
    action: Literal["scroll"] = "scroll"
    direction: Literal["up", "down", "left", "right"]
    # Fraction of the screen to travel; the server default applies when omitted.
    amount: Optional[float] = Field(default=None, gt=0, le=1)


class Swipe(_ActionBase):
    action: Literal["swipe"] = "swipe"
    start_x: float = Field(ge=0)
    start_y: float = Field(ge=0)
    end_x: float = Field(ge=0)
    end_y: float = Field(ge=0)


class PressButton(_ActionBase):
    action: Literal["press_button"] = "press_button"
    button: Literal["home", "back"]


class Wait(_ActionBase):
    action: Literal["wait"] = "wait"
    duration_ms: int = Field(default=1000, gt=0)


_ACTION_MODELS = (TapElement, TapCoordinates, TypeText, Scroll, Swipe, PressButton, Wait)
Action = Annotated[Union[_ACTION_MODELS], Field(discriminator="action")]
# Tag values in union order; the planner tool schema offers exactly these.
ACTION_KINDS = tuple(model.model_fields["action"].default for model in _ACTION_MODELS)

_ACTION_ADAPTER: TypeAdapter = TypeAdapter(Action)


class VerificationPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    goal_reached: bool
    reasoning: str = ""


def parse_action(payload: Any, usage: Optional["TokenUsage"] = None) -> Action:
    """Validate a planner payload into one of the Action variants."""
    try:
        return _ACTION_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise MalformedResponseError(f"Planner returned an invalid action: {e}", usage=usage, raw=payload) from e


def parse_verification(payload: Any, usage: Optional["TokenUsage"] = None) -> "Verification":
    try:
        verdict = VerificationPayload.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponseError(f"Planner returned an invalid verification: {e}", usage=usage, raw=payload) from e
    return Verification(goal_reached=verdict.goal_reached, reasoning=verdict.reasoning, usage=usage or TokenUsage())


# --------------------------------------------------------------------------- #
# Planner replies
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class PlannedAction:
    action: Action
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class Verification:
    goal_reached: bool
    reasoning: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)


# --------------------------------------------------------------------------- #
# Run log and result
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class ActionRecord:
    """Append-only log entry for one executed action."""
    timestamp: float
    action: str
    params: Dict[str, Any]
    reasoning: str
    success: bool

    @classmethod
    def from_action(cls, action: Action, success: bool, timestamp: Optional[float] = None) -> "ActionRecord":
        return cls(
            timestamp=time.time() if timestamp is None else timestamp,
            action=action.action,
            params=action.params(),
            reasoning=action.reasoning,
            success=success,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NavigationResult:
    success: bool
    actions_executed: int
    total_tokens: int
    estimated_cost: float
    action_history: Tuple[ActionRecord, ...] = ()
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["action_history"] = [record.to_dict() for record in self.action_history]
        return payload
