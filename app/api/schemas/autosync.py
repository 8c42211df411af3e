"""Schemas for auto-sync endpoints."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class DatabaseConnection(BaseModel):
    """Connection details of a database source."""

    host: Optional[str] = Field(None, description="Database host")
    port: Optional[str] = Field(None, description="Database port")
    username: Optional[str] = Field(None, description="Database user")
    password: Optional[str] = Field(None, description="Database password (encrypted at rest)")
    database_name: Optional[str] = Field(None, description="Database to back up")


class JobCreateRequest(DatabaseConnection):
    """Request to create a job.

    Mail connectors take `refresh_token`; database connectors take the
    connection fields. `name` is optional: mail jobs are named after the
    account identity and reject a different name.
    """

    name: Optional[str] = Field(None, description="Job name")
    refresh_token: Optional[str] = Field(None, description="OAuth refresh token of the mail account")


class JobUpdateRequest(BaseModel):
    """Partial update of a job. Absent fields are left untouched."""

    interval: Optional[str] = Field(None, description="daily|weekly|monthly (requires `on`)")
    on: Optional[str] = Field(None, description="Anchor of the interval (requires `interval`)")
    refresh_token: Optional[str] = Field(None, description="New refresh token (mail jobs)")
    database_connection: Optional[DatabaseConnection] = Field(None, description="New connection (database jobs)")
    destination_token: Optional[str] = Field(None, description="Access token of the destination store")
    active: Optional[bool] = Field(None, description="Activate or deactivate scheduled backups")


class TransferRequest(BaseModel):
    """Request to upload selected source items now."""

    keys: List[str] = Field(default_factory=list, description="Source item keys")


class PurgeRequest(BaseModel):
    """Request to delete every job bound to an account identity."""

    name: str = Field(..., description="Account identity (job name)")
    secret: str = Field(..., description="Shared purge secret")
