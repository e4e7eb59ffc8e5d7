"""
Database Models for SparkChat

This module contains Pydantic models and dataclasses that mirror the database schema.
These models are used for type safety, validation, and data transfer between the database and API.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS
# =============================================================================


class SandboxStatus(str, Enum):
    """Sandbox lifecycle states"""
    NOT_STARTED = "Not started"
    INITIALIZING = "Initializing..."
    READY = "Ready"
    INSTALLING = "Installing"
    RUNNING = "Running"
    STOPPED = "Stopped"
    FAILED = "Failed"


class ProjectType(str, Enum):
    """Runtime a file tree is started with"""
    NODE = "node"
    PYTHON = "python"


class ChatEvent(str, Enum):
    """WebSocket event names"""
    PROJECT_MESSAGE = "project-message"
    MESSAGE_DELETED = "message-deleted"
    HISTORY_CLEARED = "history-cleared"
    HISTORY = "history"
    FILE_TREE_UPDATED = "file-tree-updated"
    ERROR = "error"


# =============================================================================
# DATABASE MODELS (using dataclass for database records)
# =============================================================================


@dataclass
class User:
    """User database model"""
    id: UUID
    email: str
    password: str
    created_at: datetime


@dataclass
class Project:
    """Project database model"""
    id: UUID
    name: str
    file_tree: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    users: List[UUID] = field(default_factory=list)


# =============================================================================
# API MODELS (Pydantic for request/response validation)
# =============================================================================


class Sender(BaseModel):
    """Author of a chat message; `_id` is "ai" for assistant replies."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(alias="_id")
    email: Optional[str] = None


class UserPublic(BaseModel):
    """User as exposed to other clients (never includes the password hash)."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    email: str
