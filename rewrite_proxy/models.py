from typing import Dict

from pydantic import BaseModel


class ErrorEnvelope(BaseModel):
    error: str
    message: str
    timestamp: str


class SessionStats(BaseModel):
    active_sessions: int
    authenticated_users: int


class RelayStats(BaseModel):
    active_connections: int
    total_messages: int
    oldest_connection_age: float
    max_capacity: int


class HealthResponse(BaseModel):
    status: str
    message: str
    timestamp: str
    sessions: SessionStats
    relay: RelayStats


class ServiceInfo(BaseModel):
    name: str
    version: str
    description: str
    endpoints: Dict[str, str]
