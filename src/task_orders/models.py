"""
Pydantic models for task orders, read projections and leaderboard entries.

Provides the records handed out by the store and service layers, plus the
request/response models used for validation by the HTTP API.
"""

from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from enum import Enum

LOGIN_MAX_LENGTH = 100


class OrderStatus(str, Enum):
    """Solve status of a task order. Values match the stored vocabulary."""

    NOT_SOLVED = "NOT SOLVED"
    SOLVED = "SOLVED"


class User(BaseModel):
    """Platform user that can be assigned task orders."""

    user_id: int
    login: str = Field(min_length=1, max_length=LOGIN_MAX_LENGTH)


class Task(BaseModel):
    """Programming task that orders refer to."""

    task_id: int
    difficulty_group: str = Field(description="Difficulty bucket used for scoring")
    short_desc: str
    reg_date: datetime
    popularity: int = Field(0, ge=0)
    elapsed_time: int = Field(0, ge=0, description="Baseline solve time in seconds")


class TaskOrder(BaseModel):
    """Assignment of a task to a user, tracked through its solve lifecycle."""

    order_id: int
    user_id: int
    task_id: int
    reg_date: datetime = Field(description="Assignment instant (UTC)")
    exec_time: int = Field(0, ge=0, description="Seconds between assignment and completion")
    status: OrderStatus = OrderStatus.NOT_SOLVED
    solved_at: Optional[datetime] = None

    @property
    def is_solved(self) -> bool:
        return self.status == OrderStatus.SOLVED


class OrderDTO(BaseModel):
    """Denormalized order history row: user, task and order fields joined."""

    order_id: int
    user_id: int
    login: str
    difficulty_group: str
    short_desc: str
    order_reg_date: datetime
    status: OrderStatus
    task_reg_date: datetime
    popularity: int
    elapsed_time: int
    exec_time: int


class SolveRecord(BaseModel):
    """One SOLVED order as seen by the rating aggregator."""

    user_id: int
    login: str
    difficulty_group: str
    exec_time: int
    solved_at: datetime


class RatingEntry(BaseModel):
    """Per-user leaderboard entry derived from solve history."""

    user_id: int
    login: str
    score: float = Field(ge=0.0)
    solved_count: int = Field(ge=0)
    average_exec_time: Optional[float] = None
    first_solved_at: Optional[datetime] = None


# HTTP request/response models


class AssignOrderRequest(BaseModel):
    """Request model for assigning a task to a user."""

    user_id: int = Field(gt=0)
    task_id: int = Field(gt=0)


class CompleteOrderRequest(BaseModel):
    """Request model for completing an order. Server time is used when omitted."""

    completed_at: Optional[datetime] = None

    @field_validator("completed_at")
    @classmethod
    def validate_timezone(cls, v):
        """Reject naive timestamps so elapsed time is unambiguous."""
        if v is not None and v.tzinfo is None:
            raise ValueError("completed_at must include a timezone offset")
        return v


class AssignOrderResponse(BaseModel):
    """Response model for order assignment."""

    created: bool
    order: TaskOrder


class DeleteOrderResponse(BaseModel):
    """Response model for order deletion."""

    success: bool = True
    order_id: int
    deleted: bool


class LeaderboardResponse(BaseModel):
    """Response model for the top users leaderboard."""

    entries: List[RatingEntry]
    total_count: int
    limit: int


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    database_connected: bool
    timestamp: str
