"""
Input and record schemas.

Structural validation only: types, lengths, required combinations. Checks
that need the store (parents exist, step kinds, composite cycles) live in
validation.py.

Pydantic validation errors are converted into boardsync ValidationError
by ``validate_model``; nothing outside this module sees pydantic errors.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..store.records import EntityType


class BoardStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Timeframe(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class CenterSquareType(str, Enum):
    FREE = "free"
    CUSTOM_FREE = "custom_free"
    CHOSEN = "chosen"
    NONE = "none"


class TaskKind(str, Enum):
    SIMPLE = "simple"
    QUANTIFIED = "quantified"
    MULTI_STEP = "multi_step"


class AchievementType(str, Enum):
    """What an achievement square counts on the other boards."""

    BINGO = "bingo"
    FULL_COMPLETION = "full_completion"


BoardSize = Literal[3, 4, 5]


# =============================================================================
# Inputs
# =============================================================================


class CreateBoardInput(BaseModel):
    """Create a board, optionally laying out tasks on it."""

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    board_size: BoardSize = 3
    timeframe: Timeframe = Timeframe.CUSTOM
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    center_square_type: CenterSquareType = CenterSquareType.NONE
    center_square_custom_name: Optional[str] = Field(None, max_length=100)
    center_task_id: Optional[str] = None
    is_randomized: bool = False
    task_ids: list[str] = Field(default_factory=list, description="Tasks for the non-center squares")

    @model_validator(mode="after")
    def check_combinations(self) -> CreateBoardInput:
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        if self.center_square_type == CenterSquareType.CUSTOM_FREE and not self.center_square_custom_name:
            raise ValueError("center_square_custom_name is required when center_square_type is custom_free")
        if self.center_square_type == CenterSquareType.CHOSEN and not self.center_task_id:
            raise ValueError("center_task_id is required when center_square_type is chosen")
        if self.center_square_type != CenterSquareType.NONE and self.board_size % 2 == 0:
            raise ValueError("Only odd board sizes have a center square")
        return self


class CreateTaskInput(BaseModel):
    """Create a simple, quantified or multi-step task."""

    title: str = Field("", max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    kind: TaskKind = TaskKind.SIMPLE
    action: Optional[str] = Field(None, max_length=50)
    unit: Optional[str] = Field(None, max_length=50)
    target: Optional[int] = Field(None, gt=0)
    step_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_kind(self) -> CreateTaskInput:
        if self.kind == TaskKind.QUANTIFIED:
            if not (self.action and self.unit and self.target):
                raise ValueError("Quantified tasks must have action, unit and target")
        elif not self.title.strip():
            raise ValueError("title is required")
        if self.kind == TaskKind.MULTI_STEP and not self.step_ids:
            raise ValueError("Multi-step tasks must have at least one step")
        if self.kind != TaskKind.MULTI_STEP and self.step_ids:
            raise ValueError("Only multi-step tasks can have steps")
        return self


class CompositeNodeInput(BaseModel):
    """Nested composite node as entered by the user."""

    node_type: Literal["operator", "leaf"]
    operator_type: Optional[str] = None
    threshold: Optional[int] = None
    children: list[CompositeNodeInput] = Field(default_factory=list)
    task_id: Optional[str] = None
    child_composite_task_id: Optional[str] = None

    @model_validator(mode="after")
    def check_node(self) -> CompositeNodeInput:
        if self.node_type == "operator":
            if self.operator_type is None or not self.children:
                raise ValueError("Operator nodes must have operator_type and at least one child")
            if self.operator_type.upper() not in ("AND", "OR", "THRESHOLD", "M_OF_N"):
                raise ValueError(f"Unknown operator_type: {self.operator_type}")
            if self.operator_type.upper() in ("THRESHOLD", "M_OF_N"):
                if self.threshold is None or self.threshold <= 0:
                    raise ValueError("THRESHOLD operator must have threshold > 0")
        else:
            refs = [r for r in (self.task_id, self.child_composite_task_id) if r]
            if len(refs) != 1:
                raise ValueError("Leaf nodes must have exactly one of task_id or child_composite_task_id")
            if self.children:
                raise ValueError("Leaf nodes cannot have children")
        return self


class CreateCompositeTaskInput(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    root: CompositeNodeInput


class CreateProgressCounterInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    unit: str = Field(..., min_length=1, max_length=50)
    target_value: float = Field(..., gt=0)


# =============================================================================
# Stored records (validated on every local write)
# =============================================================================


class _Record(BaseModel):
    model_config = ConfigDict(extra="forbid")


class BoardRecord(_Record):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    status: BoardStatus
    board_size: BoardSize
    timeframe: Timeframe
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    center_square_type: CenterSquareType
    center_square_custom_name: Optional[str] = Field(None, max_length=100)
    is_randomized: bool
    total_tasks: int = Field(..., ge=0)
    completed_tasks: int = Field(..., ge=0)
    lines_completed: int = Field(..., ge=0)
    completed_line_ids: list[str]
    is_full_board: bool
    completed_at: Optional[int] = None


class TaskRecord(_Record):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    kind: TaskKind
    action: Optional[str] = Field(None, max_length=50)
    unit: Optional[str] = Field(None, max_length=50)
    target: Optional[int] = Field(None, gt=0)
    step_ids: list[str]
    total_completions: int = Field(..., ge=0)
    total_instances: int = Field(..., ge=0)

    @model_validator(mode="after")
    def check_kind(self) -> TaskRecord:
        if self.kind == TaskKind.QUANTIFIED and not self.target:
            raise ValueError("Quantified tasks must have a target")
        if self.kind == TaskKind.MULTI_STEP and not self.step_ids:
            raise ValueError("Multi-step tasks must have at least one step")
        return self


class BoardTaskRecord(_Record):
    board_id: str = Field(..., min_length=1)
    task_id: Optional[str] = None
    composite_task_id: Optional[str] = None
    row: int = Field(..., ge=0)
    col: int = Field(..., ge=0)
    is_center: bool
    is_completed: bool
    completed_at: Optional[int] = None
    current_count: int = Field(..., ge=0)
    completed_step_ids: list[str]
    completed_task_ids: list[str]
    is_achievement_square: bool = False
    achievement_type: Optional[AchievementType] = None
    achievement_count: Optional[int] = Field(None, gt=0)
    achievement_timeframe: Optional[Timeframe] = None
    achievement_progress: int = Field(0, ge=0)

    @model_validator(mode="after")
    def check_reference(self) -> BoardTaskRecord:
        if self.task_id and self.composite_task_id:
            raise ValueError("A placement references a task or a composite task, not both")
        if self.is_achievement_square:
            if self.achievement_type is None or self.achievement_count is None:
                raise ValueError("Achievement squares need achievement_type and achievement_count")
            if self.task_id or self.composite_task_id:
                raise ValueError("Achievement squares do not reference a task")
        return self


class CompositeTaskRecord(_Record):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    root_node_id: Optional[str] = None
    tree_revision: int = Field(..., ge=0)
    tree_stamp: Optional[str] = None


class CompositeNodeRecord(_Record):
    composite_task_id: str = Field(..., min_length=1)
    parent_node_id: Optional[str] = None
    node_index: int = Field(..., ge=0)
    node_type: Literal["operator", "leaf"]
    operator_type: Optional[Literal["AND", "OR", "THRESHOLD"]] = None
    threshold: Optional[int] = Field(None, gt=0)
    task_id: Optional[str] = None
    child_composite_task_id: Optional[str] = None
    tree_stamp: Optional[str] = None

    @model_validator(mode="after")
    def check_node(self) -> CompositeNodeRecord:
        refs = [r for r in (self.task_id, self.child_composite_task_id) if r]
        if self.node_type == "leaf" and len(refs) != 1:
            raise ValueError("Leaf nodes must have exactly one of task_id or child_composite_task_id")
        if self.node_type == "operator":
            if self.operator_type is None:
                raise ValueError("Operator nodes must have operator_type")
            if refs:
                raise ValueError("Operator nodes cannot reference tasks")
        return self


class ProgressCounterRecord(_Record):
    name: str = Field(..., min_length=1, max_length=100)
    unit: str = Field(..., min_length=1, max_length=50)
    target_value: float = Field(..., gt=0)
    increments: dict[str, float]
    decrements: dict[str, float]
    current_value: float


RECORD_MODELS: dict[EntityType, type[BaseModel]] = {
    EntityType.BOARD: BoardRecord,
    EntityType.TASK: TaskRecord,
    EntityType.BOARD_TASK: BoardTaskRecord,
    EntityType.COMPOSITE_TASK: CompositeTaskRecord,
    EntityType.COMPOSITE_NODE: CompositeNodeRecord,
    EntityType.PROGRESS_COUNTER: ProgressCounterRecord,
}


def validate_model(model: type[BaseModel], data: Any) -> Any:
    """Validate ``data`` against ``model``.

    Raises:
        ValidationError: With one message per failing field
    """
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = []
        for err in e.errors():
            location = ".".join(str(part) for part in err.get("loc", ()))
            errors.append(f"{location}: {err['msg']}" if location else err["msg"])
        first = e.errors()[0].get("loc", ()) if e.errors() else ()
        raise ValidationError(
            f"Invalid {model.__name__}: {'; '.join(errors)}",
            field_name=str(first[0]) if first else None,
            errors=errors,
        ) from e


def validate_record(entity_type: EntityType, data: dict[str, Any]) -> None:
    """Validate the full data of an entity about to be written locally."""
    validate_model(RECORD_MODELS[entity_type], data)
