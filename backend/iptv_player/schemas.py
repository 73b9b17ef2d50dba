"""Pydantic models for request and response bodies."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VisitIn(CamelModel):
    user_agent: Optional[str] = Field(None, description="Browser user agent of the visitor")
    channel_name: Optional[str] = Field(None, description="Channel being played, if any")


class VisitResult(CamelModel):
    success: bool
    storage_used: str
    visits: int = 0
    unique_visitors: int = 0
    channels_played: int = 0
    error: Optional[str] = None


class ChannelPlays(CamelModel):
    name: str
    play_count: int


class DayStats(CamelModel):
    date: str
    visits: int
    unique_visitors: int
    channels_played: int
    top_channels: List[ChannelPlays] = Field(default_factory=list)
    storage_used: str


class SummaryStats(CamelModel):
    total_visits: int = 0
    total_unique_visitors: int = 0
    total_channels_played: int = 0
    average_daily_visits: int = 0
    most_popular_channels: List[ChannelPlays] = Field(default_factory=list)
    storage_used: str
    error: Optional[str] = None


class CleanupResult(CamelModel):
    deleted: int
    storage_used: str


class ChannelOut(CamelModel):
    name: str
    manifest_uri: str
    logo_url: Optional[str] = None
    group: str
    drm_key_id: Optional[str] = None
    drm_key: Optional[str] = None
    user_agent: Optional[str] = None
    auth_params: Optional[Dict[str, str]] = None


class ChannelListOut(CamelModel):
    success: bool = True
    total: int
    groups: List[str]
    channels: List[ChannelOut]


class PlaylistOut(CamelModel):
    success: bool = True
    playlist_url: str


class LoginIn(CamelModel):
    password: str = Field(..., min_length=1)


class LoginOut(CamelModel):
    success: bool = True
    token: str
    expires_in: int
    message: str = "Login successful"


class StatsOut(CamelModel):
    success: bool = True
    data: List[DayStats]
    requested_days: int
    timestamp: datetime


class SummaryOut(CamelModel):
    success: bool = True
    data: SummaryStats
    timestamp: datetime


class CleanupOut(CamelModel):
    success: bool = True
    message: str
    deleted: int
    timestamp: datetime


class HealthOut(CamelModel):
    status: str
    timestamp: datetime
    uptime: float
    database: str
