"""Pydantic request/response models for the REST API.

These models define the HTTP request bodies and response shapes of the
control, configuration and unit-callback endpoints.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field


# ===================================================================
# Control
# ===================================================================


class ControlResponse(BaseModel):
    success: bool
    state: str
    reason: str = ""


class FailWaveRequest(BaseModel):
    reason: str = "failed"


# ===================================================================
# Configuration
# ===================================================================


class ConfigUpdateRequest(BaseModel):
    """Any subset of the orchestrator settings; applied only while stopped."""
    spawn_locations: Optional[List[Tuple[float, float]]] = Field(default=None, min_length=1)
    enemy_faction: Optional[str] = Field(default=None, min_length=1)
    countdown_duration: Optional[float] = Field(default=None, ge=0)
    difficulty_mode: Optional[Literal["linear", "exponential", "adaptive"]] = None
    difficulty_multiplier: Optional[float] = Field(default=None, gt=0)
    faction_seed: Optional[int] = None


class ConfigUpdateResponse(BaseModel):
    success: bool
    applied: List[str] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)
    state: str = ""


# ===================================================================
# Unit system callbacks
# ===================================================================


class UnitSpawnedRequest(BaseModel):
    unit_id: Union[int, str]


class UnitKilledRequest(BaseModel):
    unit_id: Union[int, str]
    killer_faction: Optional[str] = None


class DamageRequest(BaseModel):
    faction_id: str
    amount: float


class CallbackResponse(BaseModel):
    accepted: bool


# ===================================================================
# Queries
# ===================================================================


class WaveListResponse(BaseModel):
    waves: List[Dict[str, Any]] = Field(default_factory=list)


class HistoryResponse(BaseModel):
    history: List[Dict[str, Any]] = Field(default_factory=list)


class PendingSpawnsResponse(BaseModel):
    """Spawn requests handed to a polling unit system (oldest first)."""
    spawns: List[Dict[str, Any]] = Field(default_factory=list)
    remaining: int = 0
    dropped: int = 0
